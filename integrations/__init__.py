"""External call adapters: generic HTTP and AI completion providers."""
from integrations.http_client import HttpClient, HttpCallError, HttpResponse
from integrations.ai_provider import AIClient, AIProviderError, DEFAULT_MODELS

__all__ = [
    "HttpClient", "HttpCallError", "HttpResponse",
    "AIClient", "AIProviderError", "DEFAULT_MODELS",
]
