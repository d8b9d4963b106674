"""Tests for the messaging gateways: Evolution API delivery and inbound webhook parsing."""
import json
import httpx
import pytest

from channels.base import (
    BreakerState, CircuitBreaker, CircuitOpenError, GatewayError,
    RecentMessageIds, TokenBucket, clean_text,
)
from channels.evolution_adapter import EvolutionGateway, guess_mime_type, normalize_phone, parse_upsert_event
from channels.memory_adapter import InMemoryGateway, create_gateway
from config.settings import GatewayConfig
from models.schemas import ActionKind


def upsert(text="Oi", jid="5511999990000@s.whatsapp.net", from_me=False, message_id="ABC123", **message):
    return {
        "event": "messages.upsert",
        "instance": "loja",
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me, "id": message_id},
            "message": message or {"conversation": text},
        },
    }


# ──────────────────────────────────────────────────────────────
#  Inbound parsing
# ──────────────────────────────────────────────────────────────

class TestUpsertParsing:
    def test_conversation_text(self):
        message_id, event = parse_upsert_event(upsert("Olá"))
        assert message_id == "ABC123"
        assert event.contact_id == "5511999990000"
        assert event.text == "Olá"

    def test_extended_text(self):
        _, event = parse_upsert_event(upsert(extendedTextMessage={"text": "link aqui"}))
        assert event.text == "link aqui"

    def test_event_name_variants(self):
        payload = upsert()
        payload["event"] = "MESSAGES_UPSERT"
        assert parse_upsert_event(payload) is not None

    @pytest.mark.parametrize("payload", [
        upsert(from_me=True),
        upsert(jid="120363000000000000@g.us"),
        upsert(imageMessage={"url": "https://x"}),
        {**upsert(), "event": "connection.update"},
        {"event": "messages.upsert", "data": {}},
    ])
    def test_ignored(self, payload):
        assert parse_upsert_event(payload) is None


class TestInboundHandling:
    def test_plain_payload(self):
        gateway = InMemoryGateway()
        event = gateway.handle_inbound({"contactId": "c1", "text": "oi"})
        assert (event.contact_id, event.text) == ("c1", "oi")

    def test_plain_payload_missing_fields(self):
        gateway = InMemoryGateway()
        assert gateway.handle_inbound({"contactId": "c1"}) is None
        assert gateway.handle_inbound({"text": "oi"}) is None

    def test_duplicate_delivery_dropped(self):
        gateway = EvolutionGateway(GatewayConfig(type="evolution"))
        assert gateway.handle_inbound(upsert(message_id="M1")) is not None
        assert gateway.handle_inbound(upsert(message_id="M1")) is None
        assert gateway.handle_inbound(upsert(message_id="M2")) is not None

    def test_text_sanitized(self):
        gateway = InMemoryGateway()
        event = gateway.handle_inbound({"contactId": "c1", "text": "oi\x00\x07 tudo\tbem"})
        assert event.text == "oi tudo\tbem"


# ──────────────────────────────────────────────────────────────
#  Evolution delivery
# ──────────────────────────────────────────────────────────────

class TestEvolutionGateway:
    @pytest.fixture
    def config(self):
        return GatewayConfig(type="evolution", api_url="https://evo.example.com/", api_key="k", instance_name="loja")

    def gateway_with(self, config, status=201, body=None, calls=None):
        def handler(request):
            if calls is not None:
                calls.append(request)
            return httpx.Response(status, json=body if body is not None else {"key": {"id": "WAMID1"}})

        client = httpx.AsyncClient(base_url="https://evo.example.com", transport=httpx.MockTransport(handler))
        return EvolutionGateway(config, client=client)

    @pytest.mark.asyncio
    async def test_send_text(self, config):
        calls = []
        gateway = self.gateway_with(config, calls=calls)

        delivery_id = await gateway.send("+55 (11) 99999-0000", ActionKind.MESSAGE, {"text": "Olá!"})

        assert delivery_id == "WAMID1"
        assert calls[0].url.path == "/message/sendText/loja"
        assert json.loads(calls[0].content) == {"number": "5511999990000", "text": "Olá!"}
        await gateway.close()

    @pytest.mark.asyncio
    async def test_send_image_with_caption(self, config):
        calls = []
        gateway = self.gateway_with(config, calls=calls)
        await gateway.send("5511999990000", ActionKind.MEDIA, {
            "mediaType": "IMAGE", "url": "https://cdn.example.com/promo.png", "caption": "Promo",
        })
        body = json.loads(calls[0].content)
        assert calls[0].url.path == "/message/sendMedia/loja"
        assert body["mediatype"] == "image"
        assert body["mimetype"] == "image/png"
        assert body["caption"] == "Promo"

    @pytest.mark.asyncio
    async def test_send_document_file_name(self, config):
        calls = []
        gateway = self.gateway_with(config, calls=calls)
        await gateway.send("5511999990000", ActionKind.MEDIA, {
            "mediaType": "DOCUMENT", "url": "https://cdn.example.com/files/boleto.pdf",
        })
        body = json.loads(calls[0].content)
        assert body["fileName"] == "boleto.pdf"
        assert body["mimetype"] == "application/pdf"
        assert "caption" not in body

    @pytest.mark.asyncio
    async def test_send_audio(self, config):
        calls = []
        gateway = self.gateway_with(config, calls=calls)
        await gateway.send("5511999990000", ActionKind.MEDIA, {"mediaType": "AUDIO", "url": "https://x/a.ogg"})
        assert calls[0].url.path == "/message/sendWhatsAppAudio/loja"
        assert json.loads(calls[0].content) == {"number": "5511999990000", "audio": "https://x/a.ogg"}

    @pytest.mark.asyncio
    async def test_delivery_id_fallback(self, config):
        gateway = self.gateway_with(config, body={"status": "PENDING"})
        assert (await gateway.send("5511999990000", ActionKind.MESSAGE, {"text": "x"})).startswith("evo_")

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, config):
        gateway = self.gateway_with(config, status=503, body={"error": "down"})
        with pytest.raises(GatewayError) as exc:
            await gateway.send("5511999990000", ActionKind.MESSAGE, {"text": "x"})
        assert exc.value.status_code == 503
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, config):
        gateway = self.gateway_with(config, status=400, body={"error": "bad number"})
        with pytest.raises(GatewayError) as exc:
            await gateway.send("5511999990000", ActionKind.MESSAGE, {"text": "x"})
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_number_is_permanent(self, config):
        gateway = self.gateway_with(config)
        with pytest.raises(GatewayError) as exc:
            await gateway.send("not-a-phone", ActionKind.MESSAGE, {"text": "x"})
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(self, config):
        gateway = self.gateway_with(config, status=500, body={})
        for _ in range(5):
            with pytest.raises(GatewayError):
                await gateway.send("5511999990000", ActionKind.MESSAGE, {"text": "x"})
        with pytest.raises(CircuitOpenError):
            await gateway.send("5511999990000", ActionKind.MESSAGE, {"text": "x"})
        health = await gateway.health_check()
        assert health["circuit_breaker"]["state"] == "open"
        assert health["metrics"]["failed"] == 6


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

class TestHelpers:
    @pytest.mark.parametrize("address,expected", [
        ("5511999990000@s.whatsapp.net", "5511999990000"),
        ("+55 11 99999-0000", "5511999990000"),
        ("abc", ""),
    ])
    def test_normalize_phone(self, address, expected):
        assert normalize_phone(address) == expected

    def test_mime_types(self):
        assert guess_mime_type("VIDEO", "https://x/clip.WEBM") == "video/webm"
        assert guess_mime_type("VIDEO", "https://x/clip") == "video/mp4"
        assert guess_mime_type("UNKNOWN", "https://x/a.gif") == "image/gif"

    def test_recent_message_ids(self):
        recent = RecentMessageIds(ttl_seconds=60)
        assert not recent.seen_before("a")
        assert recent.seen_before("a")

    def test_recent_message_ids_bounded(self):
        recent = RecentMessageIds(ttl_seconds=60, max_entries=2)
        for message_id in ["a", "b", "c"]:
            recent.seen_before(message_id)
        assert not recent.seen_before("a")

    def test_clean_text_truncates(self):
        assert clean_text("abcdef", max_length=3) == "abc"
        assert clean_text("") == ""

    def test_circuit_breaker_half_open_recovers(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.on_failure()
        assert breaker.state == BreakerState.HALF_OPEN
        assert breaker.allows_request()
        breaker.on_success()
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_rate_limiter_times_out_when_empty(self):
        limiter = TokenBucket(rate=0.001, capacity=1)
        assert await limiter.acquire(timeout=0.01)
        assert not await limiter.acquire(timeout=0.01)

    def test_factory(self):
        assert isinstance(create_gateway(GatewayConfig(type="memory")), InMemoryGateway)
        assert isinstance(create_gateway(GatewayConfig(type="evolution")), EvolutionGateway)
