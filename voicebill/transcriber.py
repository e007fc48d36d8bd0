"""Audio transcription module using a remote speech-to-text service."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from .config import TranscriptionConfig
from .errors import ErrorKind, PipelineError
from .models import AudioBuffer
from .service import map_service_error

logger = logging.getLogger(__name__)

STAGE = "transcription"

DEFAULT_PROMPT = (
    "A shopkeeper dictating one invoice item. Speech mixes Hindi, English, "
    "Marathi and Hinglish. Expect an item name, a quantity with a unit such as "
    "kilo, litre, packet or piece, and a price in rupees. For example: "
    "do bread pachas rupay. teen kilo aloo sau rupay. 2 Maggi 20 rupees."
)


class TranscriptionEventType(str, Enum):
    """Lifecycle of one transcription request."""

    READY = "Ready"
    RECORDING = "Recording"  # audio payload is being sent
    PROCESSING = "Processing"
    SUCCESS = "Success"
    ERROR = "Error"


@dataclass(frozen=True)
class TranscriptionEvent:
    """One event emitted by Transcriber.transcribe()."""

    type: TranscriptionEventType
    text: Optional[str] = None
    error: Optional[PipelineError] = None

    @classmethod
    def ready(cls) -> "TranscriptionEvent":
        return cls(TranscriptionEventType.READY)

    @classmethod
    def recording(cls) -> "TranscriptionEvent":
        return cls(TranscriptionEventType.RECORDING)

    @classmethod
    def processing(cls) -> "TranscriptionEvent":
        return cls(TranscriptionEventType.PROCESSING)

    @classmethod
    def success(cls, text: str) -> "TranscriptionEvent":
        return cls(TranscriptionEventType.SUCCESS, text=text)

    @classmethod
    def failure(cls, error: PipelineError) -> "TranscriptionEvent":
        return cls(TranscriptionEventType.ERROR, error=error)

    @property
    def is_final(self) -> bool:
        return self.type in (TranscriptionEventType.SUCCESS, TranscriptionEventType.ERROR)


def language_code(hint: Optional[str]) -> Optional[str]:
    """Reduce a locale hint like "hi-IN" to the ISO-639-1 code the service takes."""
    if not hint:
        return None
    code = hint.replace("_", "-").split("-")[0].strip().lower()
    return code or None


class Transcriber:
    """Sends recorded audio to a remote transcription service."""

    def __init__(
        self,
        config: TranscriptionConfig,
        client: AsyncOpenAI,
        silence_threshold: float = 0.0,
    ):
        """Initialize the transcriber.

        Args:
            config: Transcription configuration.
            client: Client for the transcription service.
            silence_threshold: RMS level under which a recording is treated
                as containing no speech and is never uploaded.
        """
        self.transcription_config = config
        self.silence_threshold = silence_threshold
        self._client = client

    async def transcribe(
        self, buffer: AudioBuffer, language_hint: Optional[str] = None
    ) -> AsyncIterator[TranscriptionEvent]:
        """Transcribe one recording.

        The returned iterator can only be consumed once; each attempt needs a
        fresh call. It always ends with a Success or an Error event.

        Args:
            buffer: The finished recording.
            language_hint: Spoken language hint, defaults to the configured one.
        """
        yield TranscriptionEvent.ready()

        if buffer.is_silent(self.silence_threshold):
            logger.info(
                f"Recording is silent (RMS {buffer.rms_level():.5f}), "
                "skipping transcription request"
            )
            yield TranscriptionEvent.failure(
                PipelineError(
                    ErrorKind.NO_SPEECH_DETECTED,
                    "Recording contains no audible speech",
                    stage=STAGE,
                )
            )
            return

        language = language_code(language_hint or self.transcription_config.language_hint)
        request = {
            "model": self.transcription_config.model,
            "file": ("utterance.wav", buffer.to_wav(), "audio/wav"),
            "prompt": self.transcription_config.prompt or DEFAULT_PROMPT,
        }
        if language:
            request["language"] = language

        logger.info(
            f"Transcribing {buffer.duration_s:.2f}s of audio "
            f"(model: {self.transcription_config.model}, language: {language or 'auto'})"
        )
        yield TranscriptionEvent.recording()
        yield TranscriptionEvent.processing()

        try:
            response = await self._client.audio.transcriptions.create(**request)
        except openai.OpenAIError as e:
            error = map_service_error(e, STAGE)
            logger.error(f"Transcription request failed: {error}")
            yield TranscriptionEvent.failure(error)
            return

        raw_text = response if isinstance(response, str) else response.text
        text = (raw_text or "").strip()
        if not text:
            logger.info("Transcription service returned empty text")
            yield TranscriptionEvent.failure(
                PipelineError(
                    ErrorKind.NO_SPEECH_DETECTED,
                    "No speech detected in the recording",
                    stage=STAGE,
                    raw_response=raw_text,
                )
            )
            return

        logger.info(f"Transcribed: {text[:100]}")
        yield TranscriptionEvent.success(text)
