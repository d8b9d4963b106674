"""
AI response classification — turns an AI node's completion into a route label.

Modes:
  SENTIMENT  — keyword-count polarity with a threshold → positive | negative | neutral
  KEYWORDS   — first configured route whose keywords appear in the text
  CUSTOM     — a second, tightly constrained model call that returns only a label
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import AIConfig
from integrations.ai_provider import AIClient, AIProviderError
from models.schemas import ClassificationMode

logger = structlog.get_logger()

CUSTOM_SYSTEM_PROMPT = (
    "Você é um classificador. Retorne APENAS o label da classificação, "
    "sem explicações, pontuação ou texto adicional."
)


def classify_sentiment(text: str, cfg: dict[str, Any]) -> str:
    lowered = (text or "").lower()
    positive = cfg.get("positiveKeywords") or []
    negative = cfg.get("negativeKeywords") or []
    threshold = float(cfg.get("sentimentThreshold", 0.5))

    pos = sum(1 for kw in positive if kw and kw.lower() in lowered)
    neg = sum(1 for kw in negative if kw and kw.lower() in lowered)
    total = pos + neg
    if total == 0:
        return "neutral"
    if pos > neg and pos / total >= threshold:
        return "positive"
    if neg > pos and neg / total >= threshold:
        return "negative"
    return "neutral"


def classify_keywords(text: str, cfg: dict[str, Any]) -> Optional[str]:
    lowered = (text or "").lower()
    for route in cfg.get("keywordRoutes") or []:
        keywords = route.get("keywords") or []
        if any(kw and str(kw).lower() in lowered for kw in keywords):
            return route.get("routeLabel")
    return None


class Classifier:
    """Computes route labels for AI nodes with a classificationMode."""

    def __init__(self, ai_client: AIClient, ai_config: AIConfig):
        self.ai_client = ai_client
        self.ai_config = ai_config

    async def classify(
        self,
        mode: str,
        cfg: dict[str, Any],
        completion: str,
        last_user_response: str = "",
        provider: str = "",
        model: str = "",
    ) -> Optional[str]:
        mode = (mode or ClassificationMode.NONE.value).upper()
        try:
            if mode == ClassificationMode.SENTIMENT.value:
                return classify_sentiment(completion, cfg)
            if mode == ClassificationMode.KEYWORDS.value:
                return classify_keywords(completion, cfg)
        except (AttributeError, TypeError, ValueError) as e:
            # malformed classificationConfig: no route, the node advances
            logger.warning("classification_config_invalid", mode=mode, error=str(e))
            return None
        if mode == ClassificationMode.CUSTOM.value:
            return await self._classify_custom(cfg, completion, last_user_response, provider, model)
        return None

    async def _classify_custom(
        self,
        cfg: dict[str, Any],
        completion: str,
        last_user_response: str,
        provider: str,
        model: str,
    ) -> Optional[str]:
        custom_prompt = cfg.get("customPrompt")
        if not custom_prompt:
            logger.warning("custom_classification_skipped", reason="missing customPrompt")
            return None

        prompt = (
            f"{custom_prompt}\n\n"
            f'Texto original: "{last_user_response}"\n'
            f'Resposta da IA: "{completion}"\n\n'
            "Classifique a resposta acima e retorne APENAS o label."
        )
        try:
            label = await self.ai_client.complete(
                provider=cfg.get("provider") or provider,
                model=cfg.get("model") or model,
                user_prompt=prompt,
                system_prompt=CUSTOM_SYSTEM_PROMPT,
                temperature=self.ai_config.classifier_temperature,
                max_tokens=self.ai_config.classifier_max_tokens,
            )
        except AIProviderError as e:
            logger.warning("custom_classification_failed", error=str(e))
            return "neutral"
        return label.strip().lower()
