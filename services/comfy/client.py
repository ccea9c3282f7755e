"""HTTP and websocket client for a ComfyUI execution engine."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode, urlparse, urlunparse
from uuid import uuid4

import httpx
from websockets.asyncio.client import connect

from models.job_models import ImageDescriptor
from utils.errors import RemoteStartError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ComfyClient:
    """Talk to one ComfyUI server on behalf of a single tool call.

    Each instance carries its own `client_id`, which ComfyUI uses to route
    websocket events for the prompts queued by that client.
    """

    def __init__(
        self,
        base_url: str,
        client_id: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or uuid4().hex
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @property
    def ws_url(self) -> str:
        parsed = urlparse(self.base_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        path = parsed.path.rstrip("/") + "/ws"
        return urlunparse((scheme, parsed.netloc, path, "", urlencode({"clientId": self.client_id}), ""))

    async def init(self) -> None:
        """Check that the engine is reachable before any job is submitted."""
        try:
            response = await self._http.get("/system_stats")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteStartError(f"ComfyUI at {self.base_url} is not reachable: {exc}") from exc
        LOGGER.info("ComfyUI API initialized for %s", self.base_url)

    def connect_events(self):
        """Open the websocket that streams execution events for this client."""
        return connect(self.ws_url, max_size=None)

    async def queue_prompt(self, workflow: Dict[str, Any]) -> str:
        """Submit a workflow and return the prompt id ComfyUI assigned to it."""
        try:
            response = await self._http.post("/prompt", json={"prompt": workflow, "client_id": self.client_id})
        except httpx.HTTPError as exc:
            raise RemoteStartError(f"Could not submit workflow to ComfyUI: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteStartError(f"ComfyUI rejected the workflow ({response.status_code}): {_error_text(response)}")
        body = response.json()
        if body.get("node_errors"):
            raise RemoteStartError(f"ComfyUI rejected the workflow: {body['node_errors']}")
        prompt_id = body.get("prompt_id")
        if not prompt_id:
            raise RemoteStartError("ComfyUI did not return a prompt id.")
        return str(prompt_id)

    async def get_history(self, prompt_id: str) -> Dict[str, Any]:
        """Return the recorded node outputs for a finished prompt."""
        response = await self._http.get(f"/history/{prompt_id}")
        response.raise_for_status()
        entry = response.json().get(prompt_id) or {}
        return entry.get("outputs") or {}

    def image_url(self, descriptor: Union[ImageDescriptor, Dict[str, Any]]) -> str:
        """Build the engine URL that serves an output image."""
        if isinstance(descriptor, dict):
            descriptor = ImageDescriptor.from_dict(descriptor)
        query = urlencode({"filename": descriptor.filename, "type": descriptor.type, "subfolder": descriptor.subfolder})
        return f"{self.base_url}/view?{query}"

    async def interrupt(self, prompt_id: Optional[str] = None) -> bool:
        """Ask the engine to stop execution; failures are logged, not raised."""
        payload = {"prompt_id": prompt_id} if prompt_id else None
        try:
            response = await self._http.post("/interrupt", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Interrupt request to ComfyUI failed: %s", exc)
            return False
        LOGGER.info("Interrupt requested for ComfyUI prompt %s", prompt_id or "<current>")
        return True

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or body)
