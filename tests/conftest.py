"""Shared fixtures and fakes for voicebill tests."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
import pytest

from voicebill.models import SAMPLE_RATE, AudioBuffer


def make_tone(duration_s: float = 0.5, amplitude: int = 8000) -> bytes:
    """Generate a 440 Hz tone as s16 PCM bytes."""
    t = np.arange(int(SAMPLE_RATE * duration_s)) / SAMPLE_RATE
    return (np.sin(2 * np.pi * 440 * t) * amplitude).astype(np.int16).tobytes()


def make_silence(duration_s: float = 2.0) -> bytes:
    """Generate digital silence as s16 PCM bytes."""
    return np.zeros(int(SAMPLE_RATE * duration_s), dtype=np.int16).tobytes()


def chat_response(content):
    """Build an object shaped like a chat completion response."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )


def fake_request(path: str = "/v1/chat/completions") -> httpx.Request:
    return httpx.Request("POST", f"https://api.openai.com{path}")


def fake_response(status_code: int, path: str = "/v1/chat/completions") -> httpx.Response:
    return httpx.Response(status_code, request=fake_request(path))


@pytest.fixture
def speech_buffer():
    """Half a second of audible tone."""
    return AudioBuffer(pcm=make_tone())


@pytest.fixture
def silence_buffer():
    """Two seconds of silence."""
    return AudioBuffer(pcm=make_silence(2.0))


@pytest.fixture
def transcription_client():
    """Mock client for the transcription service."""
    client = MagicMock()
    client.audio.transcriptions.create = AsyncMock(
        return_value=SimpleNamespace(text="do bread pachas rupay")
    )
    return client


@pytest.fixture
def extraction_client():
    """Mock client for the extraction service."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=chat_response(
            '{"item": "Bread", "quantity": 2, "price": 50, "confidence": 0.95}'
        )
    )
    return client


async def never_returns(*args, **kwargs):
    """Coroutine that blocks until cancelled."""
    await asyncio.Event().wait()


FAKE_CHUNK = np.array([1000, -1000, 2000, -2000], dtype=np.int16).tobytes()


def make_process(chunks=None, returncode=None):
    """Create a mock asyncio.subprocess.Process."""
    process = AsyncMock()
    process.pid = 1234
    process.returncode = returncode

    # terminate() and kill() are sync methods
    process.terminate = MagicMock()
    process.kill = MagicMock()
    process.wait = AsyncMock(return_value=0 if returncode is None else returncode)

    process.stdout = AsyncMock(spec=asyncio.StreamReader)
    process.stdout.read.side_effect = chunks if chunks is not None else [FAKE_CHUNK, b""]
    return process


def make_endless_process(delay=0.01):
    """Create a mock process that keeps producing audio until terminated."""
    process = make_process()

    async def read(n):
        await asyncio.sleep(delay)
        return FAKE_CHUNK

    process.stdout.read.side_effect = read
    return process
