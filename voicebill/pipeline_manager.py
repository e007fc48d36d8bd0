"""Orchestration of the voice-to-item pipeline."""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from .audio_capture import PWRecordCapture
from .config import MAX_RECORDING_DURATION_S, AppConfig
from .errors import ErrorKind, PipelineBusyError, PipelineError
from .extractor import ItemExtractor
from .models import (
    CANCELLED,
    CAPTURING,
    EXTRACTING,
    TRANSCRIBING,
    AudioBuffer,
    PipelineState,
    PipelineStateEnum,
)
from .state import PipelineStateManager
from .transcriber import TranscriptionEventType, Transcriber

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Extra time granted to the recorder past its own duration limit
CAPTURE_GRACE_S = 5.0


class PipelineRun:
    """Handle on one pipeline run."""

    def __init__(self, state_manager: PipelineStateManager):
        """Initialize the run handle.

        Args:
            state_manager: State machine of this run.
        """
        self.state_manager = state_manager
        self._states: asyncio.Queue[PipelineState] = asyncio.Queue()
        self._states.put_nowait(state_manager.current_state)
        self._stream_taken = False
        self._task: Optional[asyncio.Task] = None
        state_manager.add_observer(self._states.put_nowait)

    @property
    def state(self) -> PipelineState:
        """Current state of the run."""
        return self.state_manager.current_state

    @property
    def done(self) -> bool:
        return self.state_manager.is_terminal

    async def states(self) -> AsyncIterator[PipelineState]:
        """Yield every state of the run, from Idle through the terminal state.

        The stream can only be consumed once.
        """
        if self._stream_taken:
            raise RuntimeError("State stream of this run was already consumed")
        self._stream_taken = True

        while True:
            state = await self._states.get()
            yield state
            if state.is_terminal:
                return

    async def wait(self) -> PipelineState:
        """Wait for the run to finish and return its terminal state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.state

    async def cancel(self) -> None:
        """Cancel the run and wait until its resources are released."""
        if self._task is None or self._task.done():
            return

        logger.info("Cancelling pipeline run.")
        self._task.cancel()
        await asyncio.wait({self._task})


class PipelineManager:
    """Drives capture, transcription and extraction for one run at a time."""

    def __init__(
        self,
        config: AppConfig,
        audio_capture: PWRecordCapture,
        transcriber: Transcriber,
        extractor: ItemExtractor,
    ):
        """Initialize the pipeline manager.

        Args:
            config: Application configuration (stage deadlines, language hint).
            audio_capture: Microphone recorder.
            transcriber: Remote transcription client.
            extractor: Remote item extraction client.
        """
        self.config = config
        self.audio_capture = audio_capture
        self.transcriber = transcriber
        self.extractor = extractor

        self._active_run: Optional[PipelineRun] = None
        self._observers: List[Callable[[PipelineState], Any]] = []

    @property
    def is_active(self) -> bool:
        """Whether a run is in progress."""
        run = self._active_run
        return run is not None and run._task is not None and not run._task.done()

    @property
    def active_run(self) -> Optional[PipelineRun]:
        return self._active_run if self.is_active else None

    @property
    def current_state(self) -> Optional[PipelineStateEnum]:
        """State of the active run, or None when idle."""
        run = self.active_run
        return run.state.state if run else None

    def add_observer(self, observer: Callable[[PipelineState], Any]) -> None:
        """Register a callback attached to the state machine of every new run."""
        self._observers.append(observer)

    def start(
        self,
        max_duration: Optional[float] = None,
        language_hint: Optional[str] = None,
    ) -> PipelineRun:
        """Start a new pipeline run.

        Args:
            max_duration: Recording limit in seconds (config value by default).
            language_hint: Spoken language hint (config value by default).

        Returns:
            Handle on the started run.

        Raises:
            PipelineBusyError: If another run is still active.
            ValueError: If max_duration is not positive.
        """
        if max_duration is not None and max_duration <= 0:
            raise ValueError(f"Recording duration must be positive, got {max_duration}")

        if self.is_active:
            raise PipelineBusyError("A pipeline run is already active")

        state_manager = PipelineStateManager()
        for observer in self._observers:
            state_manager.add_observer(observer)

        run = PipelineRun(state_manager)
        run._task = asyncio.create_task(
            self._execute(run, max_duration, language_hint)
        )
        run._task.add_done_callback(lambda task: self._on_run_done(run, task))
        self._active_run = run

        logger.info("Pipeline run started.")
        return run

    async def run(
        self,
        max_duration: Optional[float] = None,
        language_hint: Optional[str] = None,
    ) -> PipelineState:
        """Start a run and wait for its terminal state."""
        handle = self.start(max_duration, language_hint)
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            await handle.cancel()
            raise

    async def cancel(self) -> None:
        """Cancel the active run, if any."""
        run = self.active_run
        if run is None:
            logger.warning("No pipeline run is active.")
            return
        await run.cancel()

    def _on_run_done(self, run: PipelineRun, task: asyncio.Task) -> None:
        # A task cancelled before its first step never reaches _execute's handlers
        if task.cancelled() and not run.state_manager.is_terminal:
            run.state_manager.set_state(CANCELLED)
        if self._active_run is run:
            self._active_run = None

    async def _execute(
        self,
        run: PipelineRun,
        max_duration: Optional[float],
        language_hint: Optional[str],
    ) -> PipelineState:
        """Run all stages in order and settle the run in a terminal state."""
        state_manager = run.state_manager
        stage = "capture"

        try:
            state_manager.set_state(CAPTURING)
            buffer = await self._capture(max_duration)

            stage = "transcription"
            state_manager.set_state(TRANSCRIBING)
            text = await self._with_deadline(
                self._transcribe(buffer, language_hint),
                self.config.transcription.timeout_s,
                stage,
            )

            stage = "extraction"
            state_manager.set_state(EXTRACTING)
            item = await self._with_deadline(
                self.extractor.extract(text),
                self.config.extraction.timeout_s,
                stage,
            )

            state_manager.set_state(PipelineState.succeeded(item))
            logger.info(f"Pipeline run succeeded: {item.name}")

        except PipelineError as e:
            logger.error(f"Pipeline run failed: {e}")
            if e.raw_response:
                logger.error(f"Raw service response: {e.raw_response!r}")
            state_manager.set_state(PipelineState.failed(e))

        except asyncio.CancelledError:
            logger.info(f"Pipeline run cancelled during {stage}.")
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            state_manager.set_state(CANCELLED)

        except Exception as e:
            logger.exception(f"Unexpected error during {stage}")
            state_manager.set_state(
                PipelineState.failed(
                    PipelineError(
                        ErrorKind.SERVICE_ERROR,
                        f"Unexpected error during {stage}: {e}",
                        cause=e,
                        stage=stage,
                    )
                )
            )

        return state_manager.current_state

    async def _capture(self, max_duration: Optional[float]) -> AudioBuffer:
        """Record audio, failing if the recorder overruns its own limit."""
        if max_duration is None:
            max_duration = self.config.audio.max_duration_s
        duration = min(max_duration, MAX_RECORDING_DURATION_S)
        try:
            async with asyncio.timeout(duration + CAPTURE_GRACE_S):
                return await self.audio_capture.record(duration)
        except TimeoutError as e:
            raise PipelineError(
                ErrorKind.DEVICE_UNAVAILABLE,
                f"Recorder did not finish within {duration + CAPTURE_GRACE_S:.1f}s",
                cause=e,
                stage="capture",
            ) from e

    async def _transcribe(
        self, buffer: AudioBuffer, language_hint: Optional[str]
    ) -> str:
        """Consume the transcription events and return the final text."""
        hint = language_hint or self.config.transcription.language_hint
        async with aclosing(self.transcriber.transcribe(buffer, hint)) as events:
            async for event in events:
                logger.debug(f"Transcription event: {event.type.value}")
                if event.type == TranscriptionEventType.SUCCESS and event.text:
                    return event.text
                if event.type == TranscriptionEventType.ERROR and event.error:
                    raise event.error

        raise PipelineError(
            ErrorKind.SERVICE_ERROR,
            "Transcription ended without a result",
            stage="transcription",
        )

    async def _with_deadline(
        self, coro: Awaitable[T], timeout: float, stage: str
    ) -> T:
        """Await a remote stage, converting an overrun into NetworkTimeout."""
        try:
            async with asyncio.timeout(timeout):
                return await coro
        except TimeoutError as e:
            raise PipelineError(
                ErrorKind.NETWORK_TIMEOUT,
                f"{stage.capitalize()} did not finish within {timeout:.1f}s",
                cause=e,
                stage=stage,
            ) from e