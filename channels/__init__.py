"""Messaging gateways for outbound delivery and inbound webhook parsing."""
from channels.base import (
    MessagingGateway,
    ChannelError,
    GatewayError,
    CircuitOpenError,
    CircuitBreaker,
    TokenBucket,
)
from channels.evolution_adapter import EvolutionGateway, parse_upsert_event
from channels.memory_adapter import InMemoryGateway, create_gateway

__all__ = [
    "MessagingGateway", "ChannelError", "GatewayError", "CircuitOpenError",
    "CircuitBreaker", "TokenBucket",
    "EvolutionGateway", "InMemoryGateway", "create_gateway", "parse_upsert_event",
]
