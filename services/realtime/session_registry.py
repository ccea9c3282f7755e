"""In-memory registry of open push channels keyed by session id."""

from __future__ import annotations

import logging
from typing import Dict, Optional
from uuid import uuid4

from services.realtime.sse_channel import SseChannel

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
	"""Own the mapping from session id to push channel.

	Entries are added by `register` and removed when their channel closes.
	Removal is idempotent, so the disconnect hook and an explicit
	`unregister` can both fire without harm.
	"""

	def __init__(self) -> None:
		self._channels: Dict[str, SseChannel] = {}

	def __len__(self) -> int:
		return len(self._channels)

	def __contains__(self, session_id: object) -> bool:
		return session_id in self._channels

	def register(self, channel: SseChannel) -> str:
		"""Store a channel under a fresh session id and return the id."""
		session_id = uuid4().hex
		while session_id in self._channels:
			session_id = uuid4().hex
		self._channels[session_id] = channel
		channel.add_close_callback(lambda: self.unregister(session_id))
		LOGGER.info("Session %s opened (%d active)", session_id, len(self._channels))
		return session_id

	def lookup(self, session_id: Optional[str]) -> Optional[SseChannel]:
		"""Return the channel for a session, or None when nobody is listening."""
		if not session_id:
			return None
		return self._channels.get(session_id)

	def unregister(self, session_id: str) -> None:
		"""Remove a session; a no-op when it is already gone."""
		channel = self._channels.pop(session_id, None)
		if channel is None:
			return
		LOGGER.info("Session %s closed (%d active)", session_id, len(self._channels))
		channel.close()

	def close_all(self) -> None:
		"""Close every open channel, used on shutdown."""
		for session_id in list(self._channels):
			self.unregister(session_id)
