"""The generate-selfie tool: run a ComfyUI job and return the image URL."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from models.job_models import JobSpec
from models.session_models import ToolCall, ToolResult
from services.comfy.call_wrapper import CallWrapper
from services.comfy.client import ComfyClient
from services.generation.job_adapter import JobAdapter, ProgressSink, RunnerFactory
from services.realtime.session_registry import SessionRegistry
from services.storage.s3_uploader import S3Uploader
from services.workflow_template import WorkflowTemplate

LOGGER = logging.getLogger(__name__)


class SelfieController:
	"""Handle generate-selfie calls end to end.

	Every path returns a `ToolResult`; job and upload failures never escape
	as exceptions.
	"""

	def __init__(
		self,
		comfyui_url: str,
		template: WorkflowTemplate,
		registry: SessionRegistry,
		uploader: Optional[S3Uploader] = None,
		client_factory: Callable[[str], Any] = ComfyClient,
		runner_factory: RunnerFactory = CallWrapper,
	) -> None:
		self.comfyui_url = comfyui_url
		self.template = template
		self.registry = registry
		self.uploader = uploader
		self.client_factory = client_factory
		self.runner_factory = runner_factory

	async def generate(self, call: ToolCall) -> ToolResult:
		prompt = call.arguments.get("prompt")
		if not isinstance(prompt, str):
			return ToolResult("Error generating image: prompt must be a string", is_error=True)
		LOGGER.info('Received image generation request with prompt: "%s"', prompt)

		client = self.client_factory(self.comfyui_url)
		try:
			await client.init()
			adapter = JobAdapter(client, self.template.build, self.runner_factory)
			image_url = await adapter.run(JobSpec(prompt=prompt), self._progress_sink(call), call.signal)
		except Exception as exc:
			LOGGER.error("Error during image generation: %s", exc)
			return ToolResult(f"Error generating image: {exc}", is_error=True)
		finally:
			await client.aclose()

		return ToolResult(await self._rehost(image_url))

	async def _rehost(self, image_url: str) -> str:
		"""Upload to durable storage when enabled, falling back to the engine URL."""
		if self.uploader is None:
			return image_url
		try:
			LOGGER.info("Uploading image to S3...")
			stored_url = await self.uploader.upload_from_url(image_url)
		except Exception as exc:
			LOGGER.error("Error uploading to S3, falling back to ComfyUI URL: %s", exc)
			return image_url
		LOGGER.info("Image uploaded to S3: %s", stored_url)
		return stored_url

	def _progress_sink(self, call: ToolCall) -> Optional[ProgressSink]:
		if call.progress_token is None or call.progress_notifier is None:
			return None
		token = call.progress_token
		notifier = call.progress_notifier

		async def send(fraction: float) -> None:
			# Looked up per tick: a session that closed mid-call just stops receiving.
			if self.registry.lookup(call.session_id) is None:
				return
			await notifier(token, fraction)

		return send
