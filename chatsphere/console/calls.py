"""The single call slot shown by the call overlay.

A call is ``ringing`` until answered (incoming only) and ``active`` after that.
Every way out of a call goes through ``CallController.end``, which appends the
derived log entry before clearing the slot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from .call_log import CallLogEntry, CallLogStore

log = logging.getLogger(__name__)

END_REASONS = ("ended", "declined", "cancelled", "remote")


def now_ms() -> int:
    return int(time.time() * 1000)


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class CallRejected(Exception):
    """A call action refused by policy; ``title``/``description`` are shown to the operator."""

    def __init__(self, title: str, description: str):
        super().__init__(f"{title}: {description}")
        self.title = title
        self.description = description


@dataclass(frozen=True)
class CallState:
    id: str
    direction: str  # incoming | outgoing
    status: str  # ringing | active
    phone: str
    display_name: str
    started_at: int
    conversation_id: Optional[str] = None
    connected_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction,
            "status": self.status,
            "conversationId": self.conversation_id,
            "displayName": self.display_name,
            "phone": self.phone,
            "startedAt": self.started_at,
            "connectedAt": self.connected_at,
        }


def derive_log_entry(call: CallState, reason: str, ended_at: int) -> CallLogEntry:
    connected_at = call.connected_at
    if connected_at is None and call.status == "active":
        connected_at = call.started_at

    if connected_at is not None:
        outcome = "completed"
        duration = max(0, (ended_at - connected_at) // 1000)
    elif call.direction == "incoming":
        outcome = "declined" if reason == "declined" else "missed"
        duration = 0
    else:
        outcome = "cancelled"
        duration = 0

    return CallLogEntry(
        id=f"{call.id}-{ended_at}",
        conversation_id=call.conversation_id,
        phone=call.phone,
        display_name=call.display_name,
        direction=call.direction,
        outcome=outcome,
        started_at=call.started_at,
        ended_at=ended_at,
        duration_seconds=int(duration),
    )


class CallController:
    def __init__(
        self,
        call_log: CallLogStore,
        clock: Callable[[], int] = now_ms,
        notify: Callable[[Optional[CallState]], Any] | None = None,
        on_tick: Callable[[str], Any] | None = None,
        tick_interval: float = 1.0,
    ):
        self.call_log = call_log
        self.clock = clock
        self.notify = notify
        self.on_tick = on_tick
        self.tick_interval = tick_interval
        self._call: Optional[CallState] = None
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> Optional[CallState]:
        return self._call

    def _set(self, call: Optional[CallState]) -> None:
        self._call = call
        if call is not None and call.status == "active":
            self._start_ticker()
        else:
            self._stop_ticker()
        if self.notify is not None:
            try:
                self.notify(call)
            except Exception:
                log.exception("Call state listener failed")

    # ── transitions ──
    def start_outgoing_call(self, conversation: dict) -> CallState:
        phone = str((conversation or {}).get("phone") or "")
        if not phone:
            raise CallRejected("Calling unavailable", "This conversation does not have a phone number.")
        if self._call is not None:
            raise CallRejected("Call already in progress", "Finish the current call before starting a new one.")
        now = self.clock()
        call = CallState(
            id=f"call-{conversation.get('id')}-{now}",
            direction="outgoing",
            status="ringing",
            conversation_id=conversation.get("id"),
            display_name=conversation.get("displayName") or phone or "Unknown caller",
            phone=phone,
            started_at=now,
        )
        self._set(call)
        return call

    def receive_incoming(self, data: Any) -> Optional[CallState]:
        """Ring for a ``call_incoming`` payload; ignored while another call holds the slot."""
        if self._call is not None:
            log.debug("Incoming call ignored; call %s already in progress", self._call.id)
            return None
        data = data if isinstance(data, dict) else {}
        phone = data.get("phone") if isinstance(data.get("phone"), str) else None
        if phone is None:
            phone = data.get("from") if isinstance(data.get("from"), str) else ""
        name = data.get("displayName")
        display_name = name if isinstance(name, str) and name.strip() else (phone or "Unknown caller")
        now = self.clock()
        call_id = data.get("callId") if isinstance(data.get("callId"), str) else f"call-{now}"
        conversation_id = data.get("conversationId") if isinstance(data.get("conversationId"), str) else None
        call = CallState(
            id=call_id,
            direction="incoming",
            status="ringing",
            conversation_id=conversation_id,
            display_name=display_name,
            phone=phone,
            started_at=now,
        )
        self._set(call)
        return call

    def answer(self) -> Optional[CallState]:
        call = self._call
        if call is None or call.status != "ringing" or call.direction != "incoming":
            return None
        answered = replace(call, status="active", connected_at=self.clock())
        self._set(answered)
        return answered

    def end(self, reason: str) -> Optional[CallLogEntry]:
        if reason not in END_REASONS:
            raise ValueError(f"Unknown call end reason: {reason!r}")
        call = self._call
        if call is None:
            return None
        entry = derive_log_entry(call, reason, self.clock())
        self.call_log.append(entry)
        self._set(None)
        return entry

    def dismiss_reason(self) -> Optional[str]:
        call = self._call
        if call is None:
            return None
        if call.status == "active":
            return "ended"
        return "declined" if call.direction == "incoming" else "cancelled"

    def dismiss(self) -> Optional[CallLogEntry]:
        reason = self.dismiss_reason()
        return self.end(reason) if reason else None

    def remote_end(self, call_id: Any = None) -> Optional[CallLogEntry]:
        call = self._call
        if call is None:
            return None
        if isinstance(call_id, str) and call_id != call.id:
            return None
        return self.end("remote")

    # ── display ──
    def elapsed_seconds(self, now: int | None = None) -> int:
        call = self._call
        if call is None or call.status != "active":
            return 0
        anchor = call.connected_at if call.connected_at is not None else call.started_at
        return max(0, (int(now if now is not None else self.clock()) - anchor) // 1000)

    def status_label(self) -> str:
        call = self._call
        if call is None:
            return ""
        if call.status == "active":
            return "In call"
        return "Incoming WhatsApp call" if call.direction == "incoming" else "Calling via WhatsApp"

    def sub_label(self, now: int | None = None) -> str:
        call = self._call
        if call is None:
            return ""
        if call.status == "active":
            return format_duration(self.elapsed_seconds(now))
        return "Tap answer to connect" if call.direction == "incoming" else "Ringing..."

    # ── 1s duration ticker ──
    def _start_ticker(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._tick_task = loop.create_task(self._tick_loop())

    def _stop_ticker(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    async def _tick_loop(self) -> None:
        try:
            while self._call is not None and self._call.status == "active":
                await asyncio.sleep(self.tick_interval)
                if self.on_tick is not None and self._call is not None:
                    self.on_tick(self.sub_label())
        except asyncio.CancelledError:
            pass
