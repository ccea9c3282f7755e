"""Shared fixtures and fakes for the selfie server tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from models.job_models import ImageDescriptor
from services.realtime.session_registry import SessionRegistry
from services.realtime.sse_channel import SseChannel
from services.workflow_template import NodeAddresses, WorkflowTemplate
from utils.settings import Settings, load_settings

BASE_ENV = {
    "COMFYUI_URL": "http://comfy.test:8188",
    "POSITIVE_PROMPT_NODE_ID": "6",
    "POSITIVE_PROMPT_INPUT_NAME": "text",
    "SEED_NODE_ID": "3",
    "SEED_INPUT_NAME": "seed",
    "OUTPUT_NODE_ID": "9",
}

WORKFLOW = {
    "3": {"class_type": "KSampler", "inputs": {"seed": 0, "steps": 20}},
    "6": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
    "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "selfie"}},
}

IMAGE_OUTPUT = {"generated_image": {"images": [{"filename": "selfie_0001.png", "subfolder": "", "type": "output"}]}}


class FakeEngine:
    """Stands in for the ComfyUI client: builds URLs and records interrupts."""

    def __init__(self, init_error: Optional[Exception] = None) -> None:
        self.init_error = init_error
        self.interrupts: List[Optional[str]] = []
        self.init_calls = 0
        self.closed = False

    async def init(self) -> None:
        self.init_calls += 1
        if self.init_error is not None:
            raise self.init_error

    def image_url(self, descriptor: Any) -> str:
        if isinstance(descriptor, dict):
            descriptor = ImageDescriptor.from_dict(descriptor)
        return f"http://comfy.test:8188/view?filename={descriptor.filename}&type={descriptor.type}&subfolder={descriptor.subfolder}"

    async def interrupt(self, prompt_id: Optional[str] = None) -> bool:
        self.interrupts.append(prompt_id)
        return True

    async def aclose(self) -> None:
        self.closed = True


class ScriptedRunner:
    """Replays a fixed list of callback events.

    Steps are tuples: `("start", job_id)`, `("pending", job_id)`,
    `("progress", ProgressInfo, job_id)`, `("finished", outputs, job_id)`,
    `("failed", error, job_id)`, `("wait", asyncio.Event)`,
    `("call", fn)`, `("sleep", seconds)` and `("raise", exc)`. Running out
    of steps means the engine connection closed.
    """

    def __init__(self, script: List[tuple], engine: Any, builder: Any) -> None:
        self.script = script
        self.engine = engine
        self.builder = builder
        self.hooks: Dict[str, Any] = {}

    def on_start(self, callback):
        self.hooks["start"] = callback
        return self

    def on_pending(self, callback):
        self.hooks["pending"] = callback
        return self

    def on_progress(self, callback):
        self.hooks["progress"] = callback
        return self

    def on_finished(self, callback):
        self.hooks["finished"] = callback
        return self

    def on_failed(self, callback):
        self.hooks["failed"] = callback
        return self

    async def run(self) -> None:
        for kind, *args in self.script:
            if kind == "wait":
                await args[0].wait()
            elif kind == "call":
                args[0]()
            elif kind == "sleep":
                await asyncio.sleep(args[0])
            elif kind == "raise":
                raise args[0]
            else:
                await self.hooks[kind](*args)


def scripted(script: List[tuple]):
    """Return a runner factory that replays `script` and remembers its runners."""
    built: List[ScriptedRunner] = []

    def factory(engine: Any, builder: Any) -> ScriptedRunner:
        runner = ScriptedRunner(script, engine, builder)
        built.append(runner)
        return runner

    factory.built = built
    return factory


def queued_messages(channel: SseChannel) -> List[Dict[str, Any]]:
    """Drain the channel's pending frames and decode the JSON-RPC messages."""
    messages = []
    while not channel._queue.empty():
        frame = channel._queue.get_nowait()
        if frame and frame.startswith("event: message"):
            messages.append(decode_frame(frame))
    return messages


def decode_frame(frame: str) -> Dict[str, Any]:
    data = "\n".join(line[len("data: "):] for line in frame.splitlines() if line.startswith("data: "))
    return json.loads(data)


async def next_message(frames, timeout: float = 2.0) -> Dict[str, Any]:
    """Read frames until the next JSON-RPC message arrives."""
    while True:
        frame = await asyncio.wait_for(frames.__anext__(), timeout=timeout)
        if frame.startswith("event: message"):
            return decode_frame(frame)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def env() -> Dict[str, str]:
    return dict(BASE_ENV)


@pytest.fixture
def settings(env) -> Settings:
    return load_settings(env)


@pytest.fixture
def template() -> WorkflowTemplate:
    return WorkflowTemplate(WORKFLOW, NodeAddresses(positive_prompt="6.inputs.text", seed="3.inputs.seed", output_node="9"))


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
