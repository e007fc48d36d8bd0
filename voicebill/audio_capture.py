"""Audio capture module."""

import asyncio
import logging
from typing import Callable, List, Optional

from .config import MAX_RECORDING_DURATION_S, AudioConfig
from .errors import ErrorKind, PipelineError
from .models import NUM_CHANNELS, SAMPLE_RATE, AudioBuffer

logger = logging.getLogger(__name__)

STAGE = "capture"

AUDIO_FORMAT = "s16"  # Signed 16-bit
SAMPLE_WIDTH = 2


class PWRecordCapture:
    """Records one bounded utterance using a pw-record subprocess."""

    def __init__(
        self,
        config: AudioConfig,
        permission_check: Optional[Callable[[], bool]] = None,
    ):
        """Initialize audio capture.

        Args:
            config: The audio configuration.
            permission_check: Returns False when the user has not granted
                microphone access. Consulted before every recording.
        """
        self.audio_config = config
        self._permission_check = permission_check

        # Internal state
        self._process: Optional[asyncio.subprocess.Process] = None
        self._device_lock = asyncio.Lock()
        self._stop_requested = False

    @property
    def is_recording(self) -> bool:
        """Whether the microphone is currently held."""
        return self._device_lock.locked()

    def stop(self) -> None:
        """Ask the running recording to finish after the current read."""
        if not self.is_recording:
            logger.warning("Audio capture is not running.")
            return

        logger.info("Stop requested for audio capture.")
        self._stop_requested = True

    async def record(self, max_duration: Optional[float] = None) -> AudioBuffer:
        """Record until stop(), the duration limit, or end of stream.

        Args:
            max_duration: Recording limit in seconds. Defaults to the configured
                value and never exceeds the 30 second ceiling.

        Returns:
            The finished recording.

        Raises:
            PipelineError: PermissionDenied, DeviceUnavailable, or
                NoSpeechDetected when nothing was captured.
            ValueError: If max_duration is not positive.
        """
        if max_duration is not None and max_duration <= 0:
            raise ValueError(f"Recording duration must be positive, got {max_duration}")

        if self._device_lock.locked():
            raise PipelineError(
                ErrorKind.DEVICE_UNAVAILABLE,
                "Microphone is already in use by another recording",
                stage=STAGE,
            )

        duration = self._effective_duration(max_duration)

        async with self._device_lock:
            self._stop_requested = False
            try:
                return await self._record(duration)
            finally:
                self._stop_requested = False

    def _effective_duration(self, max_duration: Optional[float]) -> float:
        duration = (
            self.audio_config.max_duration_s if max_duration is None else max_duration
        )
        return min(duration, MAX_RECORDING_DURATION_S)

    def _check_permission(self) -> None:
        if self._permission_check is not None and not self._permission_check():
            raise PipelineError(
                ErrorKind.PERMISSION_DENIED,
                "Microphone permission not granted",
                stage=STAGE,
            )

    async def _spawn(self) -> asyncio.subprocess.Process:
        """Start the pw-record process writing raw PCM to stdout."""
        command = [
            "pw-record",
            f"--target={self.audio_config.target}",
            f"--rate={SAMPLE_RATE}",
            f"--format={AUDIO_FORMAT}",
            f"--channels={NUM_CHANNELS}",
            "-",
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except PermissionError as e:
            raise PipelineError(
                ErrorKind.PERMISSION_DENIED,
                f"Permission denied starting pw-record: {e}",
                cause=e,
                stage=STAGE,
            ) from e
        except FileNotFoundError as e:
            raise PipelineError(
                ErrorKind.DEVICE_UNAVAILABLE,
                "'pw-record' command not found. Please ensure PipeWire is installed.",
                cause=e,
                stage=STAGE,
            ) from e
        except OSError as e:
            raise PipelineError(
                ErrorKind.DEVICE_UNAVAILABLE,
                f"Failed to start pw-record: {e}",
                cause=e,
                stage=STAGE,
            ) from e

        logger.info(f"Started pw-record process with PID: {process.pid}")
        return process

    async def _record(self, duration: float) -> AudioBuffer:
        self._check_permission()

        logger.info(f"Starting audio capture with pw-record (limit: {duration:.1f}s)")
        chunks: List[bytes] = []
        process = await self._spawn()
        self._process = process

        try:
            reached_eof = await self._read_stream(process, chunks, duration)
        finally:
            exit_code = await self._release(process)
            self._process = None

        if not chunks:
            if reached_eof and exit_code not in (0, None) and not self._stop_requested:
                raise PipelineError(
                    ErrorKind.DEVICE_UNAVAILABLE,
                    f"pw-record exited with code {exit_code} before producing audio",
                    stage=STAGE,
                )
            raise PipelineError(
                ErrorKind.NO_SPEECH_DETECTED,
                "No audio data captured",
                stage=STAGE,
            )

        pcm = b"".join(chunks)
        # Drop a trailing partial sample
        pcm = pcm[: len(pcm) - len(pcm) % SAMPLE_WIDTH]

        buffer = AudioBuffer(pcm=pcm)
        logger.info(
            f"Captured {len(chunks)} chunks ({buffer.duration_s:.2f}s of audio)."
        )
        return buffer

    async def _read_stream(
        self, process: asyncio.subprocess.Process, chunks: List[bytes], duration: float
    ) -> bool:
        """Read PCM data from the subprocess stdout into chunks.

        The whole loop runs under a single deadline.

        Returns:
            True if the stream ended on its own, False if the loop was stopped.
        """
        if not process.stdout:
            raise PipelineError(
                ErrorKind.DEVICE_UNAVAILABLE,
                "Audio process stdout not available for reading",
                stage=STAGE,
            )

        deadline = asyncio.get_running_loop().time() + duration

        try:
            async with asyncio.timeout_at(deadline):
                while not self._stop_requested:
                    try:
                        data = await process.stdout.read(self.audio_config.chunk_size)
                    except OSError as e:
                        raise PipelineError(
                            ErrorKind.DEVICE_UNAVAILABLE,
                            f"Error reading audio stream: {e}",
                            cause=e,
                            stage=STAGE,
                        ) from e

                    if not data:
                        logger.info("pw-record stdout stream ended.")
                        return True
                    chunks.append(data)
        except TimeoutError:
            logger.info("Maximum recording duration reached.")
            return False

        logger.info("Audio capture stopped on request.")
        return False

    async def _release(self, process: asyncio.subprocess.Process) -> Optional[int]:
        """Terminate the recorder and wait for it to exit.

        Returns:
            The process exit code.
        """
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                logger.debug("pw-record process already gone.")

        try:
            async with asyncio.timeout(self.audio_config.stop_grace_s):
                await process.wait()
            logger.info("pw-record process terminated.")
        except TimeoutError:
            logger.warning("Timeout waiting for pw-record to terminate, killing.")
            try:
                process.kill()
            except ProcessLookupError:
                logger.debug("pw-record process already gone.")
            await process.wait()

        return process.returncode
