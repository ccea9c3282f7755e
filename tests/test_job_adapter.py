from __future__ import annotations

import asyncio

import pytest

from conftest import IMAGE_OUTPUT, scripted
from models.job_models import JobSpec, ProgressInfo
from services.generation import job_adapter
from services.generation.job_adapter import JobAdapter
from utils.cancellation import CancellationSignal
from utils.errors import OutputMissingError, RemoteJobError, RemoteStartError, TransportLostError

EXPECTED_URL = "http://comfy.test:8188/view?filename=selfie_0001.png&type=output&subfolder="


def _adapter(engine, template, script):
    return JobAdapter(engine, template.build, scripted(script))


@pytest.mark.anyio
async def test_run_resolves_to_engine_url_and_reports_progress(engine, template) -> None:
    progress = []

    async def sink(fraction: float) -> None:
        progress.append(fraction)

    adapter = _adapter(
        engine,
        template,
        [
            ("pending", "p1"),
            ("start", "p1"),
            ("progress", ProgressInfo(value=1, max=4, node="3"), "p1"),
            ("progress", ProgressInfo(value=4, max=4, node="3"), "p1"),
            ("finished", IMAGE_OUTPUT, "p1"),
        ],
    )

    url = await adapter.run(JobSpec(prompt="smiling, outdoors"), sink)

    assert url == EXPECTED_URL
    assert progress == [0.0, 0.0, 0.25, 1.0]
    assert engine.interrupts == []


@pytest.mark.anyio
async def test_prompt_and_seed_are_written_into_the_workflow(engine, template) -> None:
    factory = scripted([("finished", IMAGE_OUTPUT, "p1")])
    adapter = JobAdapter(engine, template.build, factory)

    await adapter.run(JobSpec(prompt="smiling, outdoors", seed=1234))

    workflow = factory.built[0].builder.workflow
    assert workflow["6"]["inputs"]["text"] == "smiling, outdoors"
    assert workflow["3"]["inputs"]["seed"] == 1234
    assert template.workflow["6"]["inputs"]["text"] == ""


@pytest.mark.anyio
async def test_first_terminal_callback_wins(engine, template) -> None:
    other_output = {"generated_image": {"images": [{"filename": "other.png"}]}}
    adapter = _adapter(
        engine,
        template,
        [
            ("finished", IMAGE_OUTPUT, "p1"),
            ("failed", {"exception_message": "late failure"}, "p1"),
            ("finished", other_output, "p1"),
        ],
    )

    assert await adapter.run(JobSpec(prompt="x")) == EXPECTED_URL


@pytest.mark.anyio
async def test_failure_before_finish_resolves_to_remote_job_error(engine, template) -> None:
    adapter = _adapter(
        engine,
        template,
        [
            ("pending", "p7"),
            ("failed", {"exception_message": "CUDA out of memory"}, "p7"),
            ("finished", IMAGE_OUTPUT, "p7"),
        ],
    )

    with pytest.raises(RemoteJobError) as excinfo:
        await adapter.run(JobSpec(prompt="x"))

    assert excinfo.value.job_id == "p7"
    assert "CUDA out of memory" in str(excinfo.value)


@pytest.mark.anyio
@pytest.mark.parametrize(
    "outputs",
    [
        {},
        {"generated_image": None},
        {"generated_image": {}},
        {"generated_image": {"images": []}},
        {"generated_image": {"images": [{"subfolder": ""}]}},
        {"generated_image": {"images": ["selfie_0001.png"]}},
    ],
)
async def test_missing_images_resolve_to_output_missing(engine, template, outputs) -> None:
    adapter = _adapter(engine, template, [("finished", outputs, "p1")])

    with pytest.raises(OutputMissingError) as excinfo:
        await adapter.run(JobSpec(prompt="x"))

    assert "not found" in str(excinfo.value).lower()


@pytest.mark.anyio
async def test_connection_loss_without_terminal_resolves_to_transport_lost(engine, template) -> None:
    adapter = _adapter(engine, template, [("pending", "p1"), ("start", "p1")])

    with pytest.raises(TransportLostError) as excinfo:
        await asyncio.wait_for(adapter.run(JobSpec(prompt="x")), timeout=1)

    assert excinfo.value.job_id == "p1"


@pytest.mark.anyio
async def test_runner_crash_resolves_to_transport_lost(engine, template) -> None:
    adapter = _adapter(engine, template, [("pending", "p1"), ("raise", ConnectionResetError("reset"))])

    with pytest.raises(TransportLostError):
        await asyncio.wait_for(adapter.run(JobSpec(prompt="x")), timeout=1)


@pytest.mark.anyio
async def test_submission_failure_surfaces_remote_start_error(engine, template) -> None:
    adapter = _adapter(engine, template, [("raise", RemoteStartError("rejected"))])

    with pytest.raises(RemoteStartError):
        await adapter.run(JobSpec(prompt="x"))


@pytest.mark.anyio
async def test_cancelled_while_pending_interrupts_before_settling(engine, template) -> None:
    signal = CancellationSignal()
    signal.abort("client disconnected")
    interrupts_before_terminal = []
    adapter = _adapter(
        engine,
        template,
        [
            ("pending", "p1"),
            ("call", lambda: interrupts_before_terminal.extend(engine.interrupts)),
            ("failed", {"exception_message": "Execution interrupted"}, "p1"),
        ],
    )

    with pytest.raises(RemoteJobError):
        await adapter.run(JobSpec(prompt="x"), signal=signal)

    assert interrupts_before_terminal == ["p1"]


@pytest.mark.anyio
async def test_cancellation_is_polled_on_progress(engine, template) -> None:
    signal = CancellationSignal()
    adapter = _adapter(
        engine,
        template,
        [
            ("start", "p1"),
            ("progress", ProgressInfo(value=1, max=10), "p1"),
            ("call", lambda: signal.abort()),
            ("progress", ProgressInfo(value=2, max=10), "p1"),
            ("finished", IMAGE_OUTPUT, "p1"),
        ],
    )

    # Cancellation is advisory; the engine finished anyway.
    assert await adapter.run(JobSpec(prompt="x"), signal=signal) == EXPECTED_URL
    assert engine.interrupts == ["p1"]


@pytest.mark.anyio
async def test_progress_sink_errors_do_not_affect_result(engine, template) -> None:
    async def broken_sink(fraction: float) -> None:
        raise RuntimeError("channel gone")

    adapter = _adapter(
        engine,
        template,
        [("pending", "p1"), ("progress", ProgressInfo(value=1, max=2), "p1"), ("finished", IMAGE_OUTPUT, "p1")],
    )

    assert await adapter.run(JobSpec(prompt="x"), broken_sink) == EXPECTED_URL


def test_each_job_spec_gets_a_seed_in_range() -> None:
    spec = JobSpec(prompt="x")
    assert 0 <= spec.seed < 1_000_000


@pytest.mark.anyio
async def test_runner_finishes_closing_after_terminal_event(engine, template) -> None:
    closed = asyncio.Event()
    adapter = _adapter(engine, template, [("finished", IMAGE_OUTPUT, "p1"), ("sleep", 0.01), ("call", closed.set)])

    assert await adapter.run(JobSpec(prompt="x")) == EXPECTED_URL
    assert closed.is_set()


@pytest.mark.anyio
async def test_runner_stuck_after_terminal_event_is_cancelled(engine, template, monkeypatch) -> None:
    monkeypatch.setattr(job_adapter, "RUNNER_CLOSE_SECONDS", 0.01)
    factory = scripted([("finished", IMAGE_OUTPUT, "p1"), ("wait", asyncio.Event())])
    adapter = JobAdapter(engine, template.build, factory)

    url = await asyncio.wait_for(adapter.run(JobSpec(prompt="x")), timeout=1)

    assert url == EXPECTED_URL
