"""Cooperative cancellation signal shared between transport and job code."""

from __future__ import annotations

import asyncio
from typing import Optional


class CancellationSignal:
	"""Flag set by the transport and polled by long-running work.

	Setting the signal never interrupts anything by itself. Job code checks
	`aborted` at its own poll points and decides how to react.
	"""

	def __init__(self) -> None:
		self._event = asyncio.Event()
		self.reason: Optional[str] = None

	@property
	def aborted(self) -> bool:
		return self._event.is_set()

	def abort(self, reason: str = "cancelled") -> None:
		"""Mark the signal as aborted; the first reason is kept."""
		if self._event.is_set():
			return
		self.reason = reason
		self._event.set()

	async def wait(self) -> None:
		await self._event.wait()
