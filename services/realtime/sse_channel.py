"""Server-Sent Events push channel for one client connection."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

LOGGER = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


class MessageReceiver(Protocol):
	"""Protocol session that consumes side-channel bodies for a channel."""

	async def receive(self, payload: Any) -> None: ...

	def reject(self, code: int, message: str, request_id: Any = None) -> None: ...


def format_event(event: str, data: str) -> str:
	"""Encode one SSE frame; multi-line data is split across `data:` lines."""
	lines = [f"event: {event}"]
	lines.extend(f"data: {line}" for line in data.splitlines() or [""])
	return "\n".join(lines) + "\n\n"


class SseChannel:
	"""Outbound queue of SSE frames plus a one-shot close hook.

	The HTTP response drains `frames()`; everything else only enqueues. Sends
	after close are dropped, since pushes are best-effort.
	"""

	def __init__(self, keepalive: float = KEEPALIVE_SECONDS) -> None:
		self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
		self._close_callbacks: List[Callable[[], None]] = []
		self._closed = False
		self.keepalive = keepalive
		self.receiver: Optional[MessageReceiver] = None

	@property
	def closed(self) -> bool:
		return self._closed

	def add_close_callback(self, callback: Callable[[], None]) -> None:
		"""Run `callback` once when the channel closes (immediately if already closed)."""
		if self._closed:
			callback()
			return
		self._close_callbacks.append(callback)

	def send_endpoint(self, url: str) -> None:
		self._put(format_event("endpoint", url))

	def send_message(self, message: Dict[str, Any]) -> bool:
		"""Queue a JSON-RPC message; returns False when the channel is closed."""
		return self._put(format_event("message", json.dumps(message, separators=(",", ":"))))

	def _put(self, frame: str) -> bool:
		if self._closed:
			return False
		self._queue.put_nowait(frame)
		return True

	def close(self) -> None:
		"""Close the channel and fire the close callbacks exactly once."""
		if self._closed:
			return
		self._closed = True
		self._queue.put_nowait(None)
		callbacks, self._close_callbacks = self._close_callbacks, []
		for callback in callbacks:
			try:
				callback()
			except Exception:
				LOGGER.exception("Channel close callback failed")

	async def frames(self) -> AsyncIterator[str]:
		"""Yield encoded frames until the channel closes or the client goes away."""
		try:
			while True:
				try:
					frame = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive)
				except asyncio.TimeoutError:
					yield ": keepalive\n\n"
					continue
				if frame is None:
					break
				yield frame
		finally:
			self.close()
