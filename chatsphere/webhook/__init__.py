"""Webhook ingress + background processing."""

from .runtime import WebhookRuntime
from .router import create_webhook_router
from .workers import start_webhook_workers, stop_webhook_workers

__all__ = [
    "WebhookRuntime",
    "create_webhook_router",
    "start_webhook_workers",
    "stop_webhook_workers",
]
