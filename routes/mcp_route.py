"""MCP over HTTP+SSE: a push stream per client plus a POST side channel."""

from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from mcp.types import PARSE_ERROR

from services.mcp.protocol import McpSession
from services.mcp.tools import selfie_tool
from services.realtime.session_registry import SessionRegistry
from services.realtime.sse_channel import SseChannel
from utils.errors import SessionNotFoundError

router = APIRouter()

MESSAGES_PATH = "/messages"


def _require_registry(request: Request) -> SessionRegistry:
	registry = getattr(request.app.state, "session_registry", None)
	if registry is None:
		raise HTTPException(status_code=500, detail="Session registry unavailable")
	return registry


def open_session(state, channel: SseChannel) -> str:
	"""Register `channel` and start an MCP server session bound to it."""
	registry: SessionRegistry = state.session_registry
	session_id = registry.register(channel)
	session = McpSession(session_id, channel, [selfie_tool(state.selfie_controller.generate)])
	channel.receiver = session
	session.start()
	return session_id


@router.get("/sse")
async def open_stream(request: Request):
	"""Open the push channel; the first event names the side-channel URL."""
	_require_registry(request)
	channel = SseChannel()
	session_id = open_session(request.app.state, channel)
	root_path = request.scope.get("root_path", "")
	channel.send_endpoint(f"{root_path}{MESSAGES_PATH}?sessionId={session_id}")
	return StreamingResponse(
		channel.frames(),
		media_type="text/event-stream",
		headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
	)


@router.post(MESSAGES_PATH)
async def post_message(request: Request, session_id: Optional[str] = Query(default=None, alias="sessionId")):
	"""Forward a JSON-RPC message to the session's MCP server."""
	registry = _require_registry(request)
	channel = registry.lookup(session_id)
	if channel is None or channel.receiver is None:
		raise SessionNotFoundError(session_id)
	try:
		payload = json.loads(await request.body())
	except ValueError as exc:
		channel.receiver.reject(PARSE_ERROR, "Parse error")
		raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
	await channel.receiver.receive(payload)
	return PlainTextResponse("Accepted", status_code=202)
