"""Channel adapters for all supported communication channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.retry import RetryPolicy, RetryDecision
from channels.email_adapter import EmailAdapter
from channels.instagram_adapter import InstagramAdapter
from channels.linkedin_adapter import LinkedInAdapter
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "RetryPolicy", "RetryDecision",
    "EmailAdapter", "InstagramAdapter", "LinkedInAdapter", "WhatsAppAdapter",
]
