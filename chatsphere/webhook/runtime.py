from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, List


@dataclass
class WebhookRuntime:
    # Core dependencies (injected from chatsphere.main)
    db_manager: Any
    message_processor: Any
    webhook_queue: asyncio.Queue
    vlog: Callable[[str], None]

    # Webhook verification/config
    verify_token: str
    meta_app_secret: str

    # Worker config
    workers: int
    processing_timeout_seconds: float

    # Admin-configured path served alongside /webhook (loaded at startup)
    public_path: str = "/webhook/meta"

    tasks: List[asyncio.Task] = field(default_factory=list)

    def backend_name(self) -> str:
        return "memory"
