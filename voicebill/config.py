"""Configuration handling for voicebill."""

import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Hard ceiling on one recording
MAX_RECORDING_DURATION_S = 30.0


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "voicebill" / "config.toml"


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "voicebill"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "voicebill.log"


class AudioConfig(BaseModel):
    """Microphone capture configuration."""

    target: str = Field(
        default="auto", description="PipeWire capture target (node name or id)."
    )
    max_duration_s: float = Field(
        default=MAX_RECORDING_DURATION_S,
        gt=0,
        le=MAX_RECORDING_DURATION_S,
        description="Maximum recording duration in seconds.",
    )
    chunk_size: int = Field(
        default=4096, ge=256, description="Bytes read from the recorder per iteration."
    )
    silence_threshold: float = Field(
        default=0.001,
        ge=0.0,
        le=1.0,
        description="RMS level (0.0-1.0) under which a recording counts as silence.",
    )
    stop_grace_s: float = Field(
        default=2.0, gt=0, description="Time to wait for the recorder to exit (s)."
    )


class TranscriptionConfig(BaseModel):
    """Remote speech-to-text configuration."""

    model: str = Field(default="whisper-1", description="Transcription model id.")
    language_hint: Optional[str] = Field(
        default="hi-IN", description="Spoken language hint (e.g. hi-IN, en, mr)."
    )
    timeout_s: float = Field(
        default=15.0, ge=10.0, le=15.0, description="Request deadline in seconds."
    )
    prompt: Optional[str] = Field(
        default=None, description="Override for the domain instruction."
    )
    base_url: Optional[str] = Field(
        default=None, description="Optional OpenAI-compatible endpoint."
    )
    api_key: Optional[str] = Field(
        default=None, description="API key (falls back to OPENAI_API_KEY)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Transcription model identifier cannot be empty")
        return v


class ExtractionConfig(BaseModel):
    """Remote structured extraction configuration."""

    model: str = Field(default="gpt-4o-mini", description="Chat model id.")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    top_p: float = Field(default=0.95, gt=0.0, le=1.0)
    max_tokens: int = Field(default=512, ge=16)
    timeout_s: float = Field(
        default=15.0, ge=10.0, le=15.0, description="Request deadline in seconds."
    )
    min_confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Replies below this confidence fail with LowConfidence (0 = off).",
    )
    json_mode: bool = Field(
        default=True, description="Ask the service for a JSON object response."
    )
    base_url: Optional[str] = Field(
        default=None, description="Optional OpenAI-compatible endpoint."
    )
    api_key: Optional[str] = Field(
        default=None, description="API key (falls back to OPENAI_API_KEY)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Extraction model identifier cannot be empty")
        return v


class DaemonConfig(BaseModel):
    """Runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def resolve_api_key(configured: Optional[str]) -> Optional[str]:
    """Return the configured API key, or the OPENAI_API_KEY environment value."""
    return configured or os.environ.get("OPENAI_API_KEY")


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
