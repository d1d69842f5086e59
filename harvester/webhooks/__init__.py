"""Webhooks module - signed event delivery to subscribers."""

from .manager import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventType,
    WebhookManager,
    sign,
    verify,
)

__all__ = [
    "DeliveryStatus",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookManager",
    "sign",
    "verify",
]
