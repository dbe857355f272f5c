"""Server-Sent Events relay from the broadcast channel to HTTP clients.

Each client stream owns one channel subscription for its whole life and
turns queued messages into ``row``/``rows``/``progress`` frames, with a
``ping`` heartbeat while idle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .broadcast import BroadcastChannel
from .domain_models import BroadcastMessage, ProgressMessage, StreamMessage, utc_now_iso
from .json_utils import compact_json_dumps, sanitize_for_json

LOGGER = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_S: float = 15.0
"""Idle interval after which a ``ping`` frame is sent to keep proxies from closing the stream."""

_DISCONNECT_POLL_S: float = 1.0
"""Upper bound on how long a disconnected client can go unnoticed between messages."""

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_ERROR_PAYLOAD: dict[str, str] = {"type": "error", "message": "payload_build_failed"}


def format_sse(event: str, payload: Any) -> str:
    """Frame *payload* as one Server-Sent Event."""
    return f"event: {event}\ndata: {compact_json_dumps(payload)}\n\n"


class StreamGateway:
    """Relays broadcast messages to any number of long-lived SSE clients."""

    def __init__(
        self,
        channel: BroadcastChannel,
        heartbeat_s: float = DEFAULT_HEARTBEAT_S,
        disconnect_poll_s: float = _DISCONNECT_POLL_S,
    ) -> None:
        self.channel = channel
        self.heartbeat_s = max(0.01, float(heartbeat_s))
        self._poll_s = max(0.01, min(float(disconnect_poll_s), self.heartbeat_s))
        self._active_streams = 0

    @property
    def active_streams(self) -> int:
        return self._active_streams

    async def stream(
        self,
        *,
        entity_id: str | None = None,
        job_id: str | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames until the client goes away.

        The subscription is released when *is_disconnected* reports true, when
        the consumer closes the generator, or when the serving task is
        cancelled.
        """
        self._active_streams += 1
        try:
            async with self.channel.subscribe(entity_id=entity_id, job_id=job_id) as sub:
                yield format_sse(
                    "hello",
                    {"type": "hello", "entityId": entity_id, "jobId": job_id},
                )
                loop = asyncio.get_running_loop()
                next_heartbeat = loop.time() + self.heartbeat_s
                while True:
                    if is_disconnected is not None and await is_disconnected():
                        LOGGER.debug("Stream client disconnected (sub=%d)", sub.sub_id)
                        return
                    timeout = min(self._poll_s, max(0.0, next_heartbeat - loop.time()))
                    try:
                        first = await asyncio.wait_for(sub.get(), timeout=timeout)
                    except TimeoutError:
                        if loop.time() >= next_heartbeat:
                            next_heartbeat = loop.time() + self.heartbeat_s
                            yield format_sse("ping", {"type": "ping", "serverTime": utc_now_iso()})
                        continue
                    for frame in self._frames([first, *sub.drain()]):
                        yield frame
                    next_heartbeat = loop.time() + self.heartbeat_s
        finally:
            self._active_streams -= 1

    def _frames(self, batch: list[StreamMessage]) -> list[str]:
        items: list[dict[str, Any]] = []
        failed = 0
        progress: dict[str, ProgressMessage] = {}
        for message in batch:
            if isinstance(message, BroadcastMessage):
                try:
                    items.append(message.to_item())
                except Exception:
                    failed += 1
                    LOGGER.error(
                        "Stream item build failed for entity %s", message.entity_id, exc_info=True
                    )
            elif isinstance(message, ProgressMessage):
                progress[message.job_id] = message
        frames: list[str] = []
        if failed:
            frames.append(format_sse("error", _ERROR_PAYLOAD))
        if len(items) == 1:
            frames.append(self._encode("row", lambda: {"type": "row", "item": items[0]}))
        elif items:
            frames.append(self._encode("rows", lambda: {"type": "rows", "items": items}))
        for message in progress.values():
            frames.append(self._encode("progress", message.to_payload))
        return frames

    @staticmethod
    def _encode(event: str, build: Callable[[], dict[str, Any]]) -> str:
        try:
            cleaned, had_non_finite = sanitize_for_json(build())
            if had_non_finite:
                LOGGER.warning(
                    "Stream payload for event %r contained NaN/Inf values; replaced with null.",
                    event,
                )
            return format_sse(event, cleaned)
        except Exception:
            LOGGER.error("Stream payload build failed for event %r", event, exc_info=True)
            return format_sse("error", _ERROR_PAYLOAD)
