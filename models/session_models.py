"""Session domain models for push-channel tool calls."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from utils.cancellation import CancellationSignal

ProgressToken = Union[str, int]
ProgressNotifier = Callable[[ProgressToken, float], Awaitable[None]]


@dataclass
class ToolCall:
	"""A single tool invocation received over the side channel."""

	request_id: Any
	name: str
	arguments: dict
	session_id: Optional[str] = None
	progress_token: Optional[ProgressToken] = None
	# Sends notifications/progress on the session the call arrived on.
	progress_notifier: Optional[ProgressNotifier] = None
	signal: CancellationSignal = field(default_factory=CancellationSignal)
	received_at: float = field(default_factory=lambda: time.time())


@dataclass
class ToolResult:
	"""Tool outcome: the text shown to the client and whether it is an error."""

	text: str
	is_error: bool = False
