"""Turn a callback-driven ComfyUI job into a single awaited image URL."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from models.job_models import ImageDescriptor, JobHandle, JobSpec, ProgressInfo
from services.comfy.call_wrapper import CallWrapper
from services.comfy.prompt_builder import PromptBuilder
from utils.cancellation import CancellationSignal
from utils.errors import JobError, OutputMissingError, RemoteJobError, TransportLostError

LOGGER = logging.getLogger(__name__)

OUTPUT_KEY = "generated_image"
RUNNER_CLOSE_SECONDS = 5.0

ProgressSink = Callable[[float], Awaitable[None]]


class ImageEngine(Protocol):
    """The parts of the engine client the adapter relies on."""

    def image_url(self, descriptor: Any) -> str: ...

    async def interrupt(self, prompt_id: Optional[str] = None) -> bool: ...


class JobRunner(Protocol):
    """Callback contract of a single remote job run."""

    def on_start(self, callback): ...

    def on_pending(self, callback): ...

    def on_progress(self, callback): ...

    def on_finished(self, callback): ...

    def on_failed(self, callback): ...

    async def run(self) -> None: ...


RunnerFactory = Callable[[Any, PromptBuilder], JobRunner]


class JobAdapter:
    """Run one generation job and settle its outcome exactly once.

    The first terminal callback wins; later terminal callbacks are ignored.
    If the runner returns or raises without any terminal callback, the job
    resolves to `TransportLostError` (or the start error the runner raised).
    Cancellation is advisory: when the signal is set, an interrupt is sent at
    the next pending or progress callback and the adapter keeps waiting for
    the engine to report a terminal state.
    """

    def __init__(
        self,
        engine: ImageEngine,
        build_prompt: Callable[[JobSpec], PromptBuilder],
        runner_factory: RunnerFactory = CallWrapper,
    ) -> None:
        self.engine = engine
        self.build_prompt = build_prompt
        self.runner_factory = runner_factory

    async def run(
        self,
        spec: JobSpec,
        on_progress: Optional[ProgressSink] = None,
        signal: Optional[CancellationSignal] = None,
    ) -> str:
        """Run the job and return the artifact URL.

        Raises:
            RemoteStartError: The job could not be submitted.
            OutputMissingError: The job finished without a usable image.
            RemoteJobError: The engine reported a failure.
            TransportLostError: The connection dropped before a terminal event.
        """
        loop = asyncio.get_running_loop()
        result: asyncio.Future[str] = loop.create_future()
        handle = JobHandle(spec=spec)
        signal = signal or CancellationSignal()

        def settle(outcome: str, value: Any = None, error: Optional[BaseException] = None) -> None:
            if handle.resolved or result.done():
                LOGGER.debug("Ignoring %s for already settled job %s", outcome, handle.job_id)
                return
            handle.outcome = outcome
            if error is not None:
                result.set_exception(error)
            else:
                result.set_result(value)

        async def notify(fraction: float) -> None:
            if on_progress is None or handle.resolved:
                return
            try:
                await on_progress(fraction)
            except Exception:
                LOGGER.warning("Dropping progress notification for job %s", handle.job_id, exc_info=True)

        async def poll_cancellation() -> None:
            if not signal.aborted or handle.resolved:
                return
            handle.cancel_requested = True
            LOGGER.info("Cancellation observed for job %s (%s); requesting interrupt", handle.job_id, signal.reason)
            handle.interrupt_sent = await self.engine.interrupt(handle.job_id) or handle.interrupt_sent

        async def on_start(job_id: Optional[str]) -> None:
            if handle.started:
                return
            handle.started = True
            handle.job_id = job_id or handle.job_id
            await notify(0.0)

        async def on_pending(job_id: Optional[str]) -> None:
            handle.job_id = job_id or handle.job_id
            await notify(0.0)
            await poll_cancellation()

        async def on_progress_event(info: ProgressInfo, job_id: Optional[str]) -> None:
            handle.job_id = job_id or handle.job_id
            LOGGER.debug("Progress (job %s): node %s - %s/%s", handle.job_id, info.node, info.value, info.max)
            await notify(info.fraction)
            await poll_cancellation()

        async def on_finished(outputs: Dict[str, Any], job_id: Optional[str]) -> None:
            handle.job_id = job_id or handle.job_id
            if handle.resolved:
                return
            try:
                url = self._extract_url(outputs)
            except JobError as exc:
                LOGGER.error("Job %s finished without usable output: %r", handle.job_id, (outputs or {}).get(OUTPUT_KEY))
                settle("failed", error=exc)
                return
            except Exception as exc:
                LOGGER.exception("Error processing output of job %s", handle.job_id)
                settle("failed", error=exc)
                return
            LOGGER.info("Image generated successfully: %s", url)
            settle("finished", value=url)

        async def on_failed(error: Any, job_id: Optional[str]) -> None:
            handle.job_id = job_id or handle.job_id
            if not handle.resolved:
                LOGGER.error("ComfyUI job failed (prompt id %s): %s", handle.job_id, error)
            settle("failed", error=RemoteJobError(error, handle.job_id))

        def runner_done(task: asyncio.Task) -> None:
            if task.cancelled():
                settle("lost", error=TransportLostError(handle.job_id))
                return
            exc = task.exception()
            if isinstance(exc, JobError):
                settle("failed", error=exc)
            elif exc is not None:
                LOGGER.error("Job runner for %s crashed: %s", handle.job_id, exc)
                settle("lost", error=TransportLostError(handle.job_id))
            elif not handle.resolved:
                LOGGER.error("Engine connection closed before job %s reached a terminal state", handle.job_id)
                settle("lost", error=TransportLostError(handle.job_id))

        runner = (
            self.runner_factory(self.engine, self.build_prompt(spec))
            .on_start(on_start)
            .on_pending(on_pending)
            .on_progress(on_progress_event)
            .on_finished(on_finished)
            .on_failed(on_failed)
        )
        LOGGER.info("Workflow prepared with seed %s. Starting generation...", spec.seed)
        task = asyncio.ensure_future(runner.run())
        task.add_done_callback(runner_done)
        try:
            return await result
        finally:
            if not task.done():
                if result.done():
                    # Let the runner close its event stream before giving up on it.
                    await asyncio.wait({task}, timeout=RUNNER_CLOSE_SECONDS)
                if not task.done():
                    task.cancel()

    def _extract_url(self, outputs: Dict[str, Any]) -> str:
        output = (outputs or {}).get(OUTPUT_KEY)
        images = output.get("images") if isinstance(output, dict) else None
        if not images:
            raise OutputMissingError()
        try:
            descriptor = ImageDescriptor.from_dict(images[0])
        except (KeyError, TypeError, AttributeError) as exc:
            raise OutputMissingError() from exc
        return self.engine.image_url(descriptor)
