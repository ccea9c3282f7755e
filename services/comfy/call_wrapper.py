"""Run one ComfyUI workflow and report its lifecycle through callbacks."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from models.job_models import ProgressInfo
from services.comfy.client import ComfyClient
from services.comfy.prompt_builder import PromptBuilder
from utils.errors import RemoteStartError

LOGGER = logging.getLogger(__name__)

JobIdCallback = Callable[[Optional[str]], Awaitable[None]]
ProgressCallback = Callable[[ProgressInfo, Optional[str]], Awaitable[None]]
FinishedCallback = Callable[[Dict[str, Any], Optional[str]], Awaitable[None]]
FailedCallback = Callable[[Any, Optional[str]], Awaitable[None]]


async def _noop(*_args: Any) -> None:
	return None


class CallWrapper:
	"""Submit a workflow and translate engine websocket events into callbacks.

	Callbacks: `on_start(job_id)`, `on_pending(job_id)`,
	`on_progress(info, job_id)`, `on_finished(outputs, job_id)` and
	`on_failed(error, job_id)`. `run()` returns after the first terminal
	event, or early when the websocket closes; in the latter case no terminal
	callback has fired.
	"""

	def __init__(self, client: ComfyClient, builder: PromptBuilder) -> None:
		self.client = client
		self.builder = builder
		self.prompt_id: Optional[str] = None
		self._outputs: Dict[str, Any] = {}
		self._started = False
		self._finished = False
		self._on_start: JobIdCallback = _noop
		self._on_pending: JobIdCallback = _noop
		self._on_progress: ProgressCallback = _noop
		self._on_finished: FinishedCallback = _noop
		self._on_failed: FailedCallback = _noop

	def on_start(self, callback: JobIdCallback) -> "CallWrapper":
		self._on_start = callback
		return self

	def on_pending(self, callback: JobIdCallback) -> "CallWrapper":
		self._on_pending = callback
		return self

	def on_progress(self, callback: ProgressCallback) -> "CallWrapper":
		self._on_progress = callback
		return self

	def on_finished(self, callback: FinishedCallback) -> "CallWrapper":
		self._on_finished = callback
		return self

	def on_failed(self, callback: FailedCallback) -> "CallWrapper":
		self._on_failed = callback
		return self

	async def run(self) -> None:
		"""Queue the workflow and dispatch events until the job ends.

		Raises:
			RemoteStartError: If the websocket cannot be opened or the
				workflow is rejected at submission.
		"""
		try:
			websocket = await self.client.connect_events()
		except (OSError, InvalidHandshake) as exc:
			raise RemoteStartError(f"Could not open ComfyUI event stream: {exc}") from exc

		try:
			self.prompt_id = await self.client.queue_prompt(self.builder.workflow)
			LOGGER.info("Workflow queued as ComfyUI prompt %s", self.prompt_id)
			await self._on_pending(self.prompt_id)
			async for raw in websocket:
				if isinstance(raw, bytes):
					# Binary frames carry latent previews.
					continue
				try:
					message = json.loads(raw)
				except ValueError:
					LOGGER.debug("Ignoring non-JSON websocket frame")
					continue
				if await self._dispatch(message):
					return
		except ConnectionClosed as exc:
			LOGGER.warning("ComfyUI event stream closed for prompt %s: %s", self.prompt_id, exc)
		finally:
			await websocket.close()

	async def _dispatch(self, message: Dict[str, Any]) -> bool:
		"""Handle one event; returns True once a terminal callback has fired."""
		event_type = message.get("type")
		data = message.get("data") or {}
		if event_type == "status":
			if not self._started:
				await self._on_pending(self.prompt_id)
			return False
		if data.get("prompt_id") != self.prompt_id:
			return False

		if event_type == "execution_start":
			if not self._started:
				self._started = True
				await self._on_start(self.prompt_id)
		elif event_type == "progress":
			info = ProgressInfo(value=data.get("value", 0), max=data.get("max", 0), node=data.get("node"))
			await self._on_progress(info, self.prompt_id)
		elif event_type == "executed":
			key = self.builder.output_key_for(str(data.get("node")))
			if key is not None:
				self._outputs[key] = data.get("output") or {}
		elif event_type == "execution_success" or (event_type == "executing" and data.get("node") is None):
			await self._finish()
			return True
		elif event_type == "execution_error":
			await self._on_failed(data, self.prompt_id)
			return True
		elif event_type == "execution_interrupted":
			await self._on_failed({"exception_message": "Execution interrupted", **data}, self.prompt_id)
			return True
		return False

	async def _finish(self) -> None:
		if self._finished:
			return
		self._finished = True
		missing = [key for key in self.builder.output_nodes if key not in self._outputs]
		if missing:
			# Cached nodes do not emit "executed"; their outputs live in the history.
			try:
				history = await self.client.get_history(self.prompt_id)
			except (httpx.HTTPError, ValueError) as exc:
				LOGGER.warning("Could not read ComfyUI history for %s: %s", self.prompt_id, exc)
				history = {}
			for key in missing:
				node_output = history.get(self.builder.output_nodes[key])
				if node_output is not None:
					self._outputs[key] = node_output
		await self._on_finished(dict(self._outputs), self.prompt_id)
