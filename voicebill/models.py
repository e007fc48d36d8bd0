"""Data model shared by the pipeline stages."""

import io
import wave
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import PipelineError

# Settings expected by the transcription service
SAMPLE_RATE = 16000
NUM_CHANNELS = 1
BIT_DEPTH = 16

# Conversion factor for s16 to float32
INT16_TO_FLOAT32 = 1.0 / 32768.0

WAV_HEADER_SIZE = 44


@dataclass(frozen=True)
class AudioBuffer:
    """One finished recording of raw little-endian PCM samples."""

    pcm: bytes
    sample_rate: int = SAMPLE_RATE
    channels: int = NUM_CHANNELS
    bit_depth: int = BIT_DEPTH

    @property
    def block_align(self) -> int:
        return self.channels * self.bit_depth // 8

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align

    @property
    def duration_s(self) -> float:
        """Duration of the recording in seconds."""
        if not self.byte_rate:
            return 0.0
        return len(self.pcm) / self.byte_rate

    def __len__(self) -> int:
        return len(self.pcm)

    def rms_level(self) -> float:
        """Normalized RMS level of the samples, between 0.0 and 1.0."""
        usable = len(self.pcm) - len(self.pcm) % 2
        if usable == 0:
            return 0.0
        samples = (
            np.frombuffer(self.pcm[:usable], dtype=np.int16).astype(np.float32)
            * INT16_TO_FLOAT32
        )
        return float(np.sqrt(np.mean(np.square(samples))))

    def is_silent(self, threshold: float) -> bool:
        """Check whether the buffer holds no audible signal.

        Args:
            threshold: RMS level below which the recording counts as silence.
        """
        return not self.pcm or self.rms_level() < threshold

    def to_wav(self) -> bytes:
        """Wrap the PCM samples in a canonical 44-byte WAV header."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(self.channels)
            wf.setsampwidth(self.bit_depth // 8)
            wf.setframerate(self.sample_rate)
            wf.writeframes(self.pcm)
        return buf.getvalue()

    @classmethod
    def from_wav(cls, data: bytes) -> "AudioBuffer":
        """Read a buffer back from PCM WAV bytes.

        Raises:
            ValueError: If the bytes are not a PCM WAV stream.
        """
        if len(data) < WAV_HEADER_SIZE:
            raise ValueError(f"WAV data too short: {len(data)} bytes")

        try:
            with wave.open(io.BytesIO(data), "rb") as wf:
                return cls(
                    pcm=wf.readframes(wf.getnframes()),
                    sample_rate=wf.getframerate(),
                    channels=wf.getnchannels(),
                    bit_depth=wf.getsampwidth() * 8,
                )
        except (wave.Error, EOFError) as e:
            raise ValueError(f"Not a PCM WAV stream: {e}") from e


class ParsedItem(BaseModel):
    """One structured invoice line item extracted from speech."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Item name as spoken.")
    quantity: Optional[Decimal] = Field(
        default=None, gt=0, description="Quantity, or None when it is unknown."
    )
    unit_price: Decimal = Field(ge=0, description="Price per unit (0 if not said).")
    unit: Optional[str] = Field(default=None, description="Unit, e.g. kg or piece.")
    confidence: Decimal = Field(ge=0, le=1, description="Service confidence.")
    raw_response: str = Field(default="", repr=False, exclude=True)

    @field_validator("name")
    @classmethod
    def check_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Item name cannot be blank")
        return v

    @property
    def quantity_known(self) -> bool:
        return self.quantity is not None


class PipelineStateEnum(str, Enum):
    """Possible states of a pipeline run."""

    IDLE = "Idle"
    CAPTURING = "Capturing"
    TRANSCRIBING = "Transcribing"
    EXTRACTING = "Extracting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PipelineStateEnum.SUCCEEDED,
        PipelineStateEnum.FAILED,
        PipelineStateEnum.CANCELLED,
    }
)


@dataclass(frozen=True)
class PipelineState:
    """A pipeline state, carrying the item or the error on terminal states."""

    state: PipelineStateEnum
    item: Optional[ParsedItem] = None
    error: Optional[PipelineError] = None

    def __post_init__(self):
        if (self.item is not None) != (self.state == PipelineStateEnum.SUCCEEDED):
            raise ValueError("Only a Succeeded state carries an item")
        if (self.error is not None) != (self.state == PipelineStateEnum.FAILED):
            raise ValueError("Only a Failed state carries an error")

    @classmethod
    def succeeded(cls, item: ParsedItem) -> "PipelineState":
        return cls(PipelineStateEnum.SUCCEEDED, item=item)

    @classmethod
    def failed(cls, error: PipelineError) -> "PipelineState":
        return cls(PipelineStateEnum.FAILED, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def __str__(self) -> str:
        if self.item is not None:
            return f"{self.state.value}({self.item.name})"
        if self.error is not None:
            return f"{self.state.value}({self.error.kind.value})"
        return self.state.value


IDLE = PipelineState(PipelineStateEnum.IDLE)
CAPTURING = PipelineState(PipelineStateEnum.CAPTURING)
TRANSCRIBING = PipelineState(PipelineStateEnum.TRANSCRIBING)
EXTRACTING = PipelineState(PipelineStateEnum.EXTRACTING)
CANCELLED = PipelineState(PipelineStateEnum.CANCELLED)
