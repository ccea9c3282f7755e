"""MCP server session bound to one SSE push channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

import anyio
from mcp.server import Server
from mcp.shared.message import SessionMessage
from mcp.types import INVALID_REQUEST, ErrorData, JSONRPCMessage, TextContent, Tool
from pydantic import ValidationError

from models.session_models import ToolCall, ToolResult
from services.mcp.tools import SERVER_DESCRIPTION, SERVER_NAME, SERVER_VERSION, ToolDefinition
from services.realtime.sse_channel import SseChannel
from utils.errors import SessionNotFoundError, ToolCallError

LOGGER = logging.getLogger(__name__)


def _describe_validation(exc: ValidationError) -> str:
	return "; ".join(f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}" for error in exc.errors())


class McpSession:
	"""Run an `mcp` server over one push channel.

	Side-channel bodies are validated as JSON-RPC and fed into the server's
	read stream; everything the server writes is pushed on the channel, so
	responses never travel in the HTTP reply of the side-channel call.

	Tool handlers run as separate tasks. When the server cancels a request
	(client `notifications/cancelled` or session teardown) the call's signal
	is aborted and the job is left to finish on its own, so the engine gets
	its interrupt and still reaches a terminal state.
	"""

	def __init__(self, session_id: str, channel: SseChannel, tools: Iterable[ToolDefinition]) -> None:
		self.session_id = session_id
		self.channel = channel
		self.tools: Dict[str, ToolDefinition] = {tool.name: tool for tool in tools}
		self.inflight: Dict[Any, ToolCall] = {}
		self._detached: Set[asyncio.Task] = set()
		self._task: Optional[asyncio.Task] = None

		self.server = Server(SERVER_NAME, version=SERVER_VERSION, instructions=SERVER_DESCRIPTION)
		self._setup_tools(self.server)
		self._read_writer, self._read_stream = anyio.create_memory_object_stream(0)
		self._write_stream, self._write_reader = anyio.create_memory_object_stream(0)
		channel.add_close_callback(self.close)

	def start(self) -> None:
		self._task = asyncio.ensure_future(self._serve())

	async def receive(self, payload: Any) -> None:
		"""Hand one message or a batch of messages to the server.

		Raises:
			SessionNotFoundError: The session stopped before the message was taken.
		"""
		messages = payload if isinstance(payload, list) else [payload]
		for item in messages:
			try:
				message = JSONRPCMessage.model_validate(item)
			except ValidationError:
				LOGGER.warning("Rejecting invalid JSON-RPC message in session %s", self.session_id)
				request_id = item.get("id") if isinstance(item, dict) else None
				self.reject(INVALID_REQUEST, "Invalid Request", request_id)
				continue
			try:
				await self._read_writer.send(SessionMessage(message))
			except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
				raise SessionNotFoundError(self.session_id) from exc

	def reject(self, code: int, message: str, request_id: Any = None) -> None:
		"""Push a JSON-RPC error for a message the server never got to see."""
		error = ErrorData(code=code, message=message).model_dump(exclude_none=True)
		self._push({"jsonrpc": "2.0", "id": request_id, "error": error})

	def close(self) -> None:
		for call in list(self.inflight.values()):
			call.signal.abort("client disconnected")
		self._read_writer.close()
		task = self._task
		if task is not None and not task.done() and task is not asyncio.current_task():
			task.cancel()

	def _setup_tools(self, server: Server) -> None:
		@server.list_tools()
		async def list_tools() -> List[Tool]:
			return [tool.to_tool() for tool in self.tools.values()]

		@server.call_tool()
		async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
			tool = self.tools.get(name)
			if tool is None:
				raise ToolCallError(f"Unknown tool: {name}")
			try:
				tool.arguments.model_validate(arguments)
			except ValidationError as exc:
				raise ToolCallError(f"Invalid arguments for tool {name}: {_describe_validation(exc)}") from exc

			ctx = server.request_context
			call = ToolCall(
				request_id=ctx.request_id,
				name=name,
				arguments=arguments,
				session_id=self.session_id,
				progress_token=ctx.meta.progressToken if ctx.meta is not None else None,
				progress_notifier=ctx.session.send_progress_notification,
			)
			result = await self._run_tool(tool, call)
			if result.is_error:
				raise ToolCallError(result.text)
			return [TextContent(type="text", text=result.text)]

	async def _run_tool(self, tool: ToolDefinition, call: ToolCall) -> ToolResult:
		if self.channel.closed:
			call.signal.abort("client disconnected")
		self.inflight[call.request_id] = call
		task = asyncio.ensure_future(tool.handler(call))
		try:
			return await asyncio.shield(task)
		except asyncio.CancelledError:
			LOGGER.info("Request %s in session %s cancelled", call.request_id, self.session_id)
			call.signal.abort("cancelled by client")
			self._detached.add(task)
			task.add_done_callback(self._forget)
			raise
		finally:
			self.inflight.pop(call.request_id, None)

	def _forget(self, task: asyncio.Task) -> None:
		self._detached.discard(task)
		if not task.cancelled() and task.exception() is not None:
			LOGGER.error("Cancelled tool call failed: %s", task.exception())

	async def _serve(self) -> None:
		LOGGER.info("MCP session %s opened", self.session_id)
		try:
			async with anyio.create_task_group() as tg:
				tg.start_soon(self._push_replies)
				await self.server.run(self._read_stream, self._write_stream, self.server.create_initialization_options())
				tg.cancel_scope.cancel()
		except Exception:
			LOGGER.exception("MCP session %s ended with error", self.session_id)
		finally:
			LOGGER.info("MCP session %s closed", self.session_id)
			self.channel.close()

	async def _push_replies(self) -> None:
		async with self._write_reader:
			async for session_message in self._write_reader:
				self._push(session_message.message.model_dump(by_alias=True, mode="json", exclude_none=True))

	def _push(self, message: Dict[str, Any]) -> None:
		if not self.channel.send_message(message):
			LOGGER.debug("Session %s closed; dropping message for id %s", self.session_id, message.get("id"))
