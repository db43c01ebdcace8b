from __future__ import annotations

import asyncio
import logging

from ..observability.context import request_scope
from .runtime import WebhookRuntime

log = logging.getLogger(__name__)


async def process_one(rt: WebhookRuntime, payload: dict) -> None:
    await asyncio.wait_for(
        rt.message_processor.process_incoming_message(payload),
        timeout=max(1.0, float(rt.processing_timeout_seconds)),
    )


async def webhook_worker(rt: WebhookRuntime, worker_id: int):
    while True:
        data = await rt.webhook_queue.get()
        # One request id per event so its log lines can be grouped.
        with request_scope(operator="webhook"):
            try:
                await process_one(rt, data)
            except asyncio.TimeoutError:
                log.error(
                    "Webhook worker %s: processing timed out after %ss",
                    worker_id,
                    rt.processing_timeout_seconds,
                )
            except Exception as exc:
                log.exception("Webhook worker %s: processing failed: %s", worker_id, exc)
            finally:
                rt.webhook_queue.task_done()


async def start_webhook_workers(rt: WebhookRuntime) -> None:
    """Start webhook background workers so /webhook can ACK quickly."""
    count = max(1, int(rt.workers))
    for i in range(count):
        rt.tasks.append(asyncio.create_task(webhook_worker(rt, i + 1)))
    log.info("Webhook workers started: %s (queue maxsize=%s)", count, rt.webhook_queue.maxsize)


async def stop_webhook_workers(rt: WebhookRuntime) -> None:
    for task in rt.tasks:
        task.cancel()
    await asyncio.gather(*rt.tasks, return_exceptions=True)
    rt.tasks.clear()
