"""Tests for audio capture module using pw-record."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from voicebill.audio_capture import PWRecordCapture
from voicebill.config import AudioConfig
from voicebill.errors import ErrorKind, PipelineError

from .conftest import FAKE_CHUNK, make_endless_process, make_process


@pytest.fixture
def audio_config():
    """Create an audio configuration with a test target."""
    return AudioConfig(target="test-target", stop_grace_s=0.5)


@pytest.fixture
def audio_capture(audio_config):
    """Create a PWRecordCapture instance."""
    return PWRecordCapture(audio_config)


@pytest.fixture
def mock_subprocess():
    return make_process()


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_success(mock_create_subprocess, audio_capture, mock_subprocess):
    """Test that record() runs pw-record and returns the captured audio."""
    mock_create_subprocess.return_value = mock_subprocess

    buffer = await audio_capture.record()

    mock_create_subprocess.assert_called_once_with(
        "pw-record",
        "--target=test-target",
        "--rate=16000",
        "--format=s16",
        "--channels=1",
        "-",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )

    assert buffer.pcm == FAKE_CHUNK
    assert buffer.sample_rate == 16000
    assert buffer.channels == 1
    mock_subprocess.terminate.assert_called_once()
    mock_subprocess.wait.assert_awaited()
    assert not audio_capture.is_recording
    assert audio_capture._process is None


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_drops_partial_sample(mock_create_subprocess, audio_capture):
    """Test a trailing odd byte is not kept in the buffer."""
    mock_create_subprocess.return_value = make_process([FAKE_CHUNK, b"\x01", b""])

    buffer = await audio_capture.record()

    assert buffer.pcm == FAKE_CHUNK


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_no_data(mock_create_subprocess, audio_capture):
    """Test that an empty recording raises NoSpeechDetected."""
    mock_create_subprocess.return_value = make_process([b""])

    with pytest.raises(PipelineError) as exc_info:
        await audio_capture.record()

    assert exc_info.value.kind == ErrorKind.NO_SPEECH_DETECTED
    assert not audio_capture.is_recording


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_process_exits_with_error(mock_create_subprocess, audio_capture):
    """Test a recorder that dies before producing audio means the device is unavailable."""
    process = make_process([b""], returncode=1)
    mock_create_subprocess.return_value = process

    with pytest.raises(PipelineError) as exc_info:
        await audio_capture.record()

    assert exc_info.value.kind == ErrorKind.DEVICE_UNAVAILABLE
    process.terminate.assert_not_called()


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_pw_record_not_found(mock_create_subprocess, audio_capture):
    """Test handling of missing pw-record command."""
    mock_create_subprocess.side_effect = FileNotFoundError("pw-record not found")

    with pytest.raises(PipelineError) as exc_info:
        await audio_capture.record()

    assert exc_info.value.kind == ErrorKind.DEVICE_UNAVAILABLE
    assert isinstance(exc_info.value.__cause__, FileNotFoundError)
    assert not audio_capture.is_recording


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_spawn_permission_error(mock_create_subprocess, audio_capture):
    """Test that an OS permission error maps to PermissionDenied."""
    mock_create_subprocess.side_effect = PermissionError("denied")

    with pytest.raises(PipelineError) as exc_info:
        await audio_capture.record()

    assert exc_info.value.kind == ErrorKind.PERMISSION_DENIED


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_permission_not_granted(mock_create_subprocess, audio_config):
    """Test that a failed permission check stops before opening the device."""
    capture = PWRecordCapture(audio_config, permission_check=lambda: False)

    with pytest.raises(PipelineError) as exc_info:
        await capture.record()

    assert exc_info.value.kind == ErrorKind.PERMISSION_DENIED
    mock_create_subprocess.assert_not_called()
    assert not capture.is_recording


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_stop_finishes_recording(mock_create_subprocess, audio_capture):
    """Test that stop() ends the recording and keeps what was captured."""
    process = make_endless_process()
    mock_create_subprocess.return_value = process

    record_task = asyncio.create_task(audio_capture.record())
    await asyncio.sleep(0.05)
    assert audio_capture.is_recording

    audio_capture.stop()
    buffer = await asyncio.wait_for(record_task, timeout=1.0)

    assert len(buffer) > 0
    assert len(buffer) % len(FAKE_CHUNK) == 0
    process.terminate.assert_called_once()
    assert not audio_capture.is_recording


@pytest.mark.asyncio
async def test_stop_when_not_recording(audio_capture):
    """Test that stop() is a no-op if nothing is recording."""
    audio_capture.stop()
    assert not audio_capture._stop_requested


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_duration_limit(mock_create_subprocess, audio_capture):
    """Test the recording ends once the duration limit is reached."""
    process = make_endless_process()
    mock_create_subprocess.return_value = process

    loop = asyncio.get_running_loop()
    started = loop.time()
    buffer = await audio_capture.record(max_duration=0.1)

    assert loop.time() - started < 1.0
    assert len(buffer) > 0
    process.terminate.assert_called_once()


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_cancel_releases_device(mock_create_subprocess, audio_capture):
    """Test that cancelling a recording terminates the recorder."""
    process = make_endless_process()
    mock_create_subprocess.side_effect = [process, make_process()]

    record_task = asyncio.create_task(audio_capture.record())
    await asyncio.sleep(0.05)
    record_task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await record_task

    process.terminate.assert_called_once()
    process.wait.assert_awaited()
    assert not audio_capture.is_recording

    buffer = await audio_capture.record()
    assert buffer.pcm == FAKE_CHUNK


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_kills_stuck_process(mock_create_subprocess, audio_config):
    """Test that a recorder ignoring terminate() is killed."""
    capture = PWRecordCapture(audio_config.model_copy(update={"stop_grace_s": 0.05}))
    process = make_process()

    async def wait():
        if not process.kill.called:
            await asyncio.sleep(10)
        return -9

    process.wait = AsyncMock(side_effect=wait)
    mock_create_subprocess.return_value = process

    buffer = await capture.record()

    assert buffer.pcm == FAKE_CHUNK
    process.terminate.assert_called_once()
    process.kill.assert_called_once()


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_second_recording_is_rejected(mock_create_subprocess, audio_capture):
    """Test the microphone is exclusive to one recording at a time."""
    mock_create_subprocess.return_value = make_endless_process()

    first = asyncio.create_task(audio_capture.record())
    await asyncio.sleep(0.05)

    with pytest.raises(PipelineError) as exc_info:
        await audio_capture.record()
    assert exc_info.value.kind == ErrorKind.DEVICE_UNAVAILABLE

    audio_capture.stop()
    await first
    assert mock_create_subprocess.call_count == 1


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_record_again_after_stop(mock_create_subprocess, audio_capture):
    """Test the microphone can be opened again once released."""
    mock_create_subprocess.side_effect = [make_process(), make_process()]

    await audio_capture.record()
    buffer = await audio_capture.record()

    assert buffer.pcm == FAKE_CHUNK
    assert mock_create_subprocess.call_count == 2


def test_duration_is_capped(audio_capture):
    """Test requested durations never exceed the 30 second ceiling."""
    assert audio_capture._effective_duration(120) == 30.0
    assert audio_capture._effective_duration(5) == 5
    assert audio_capture._effective_duration(None) == 30.0


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [0, -5])
@patch("asyncio.create_subprocess_exec")
async def test_record_rejects_non_positive_duration(
    mock_create_subprocess, audio_capture, duration
):
    with pytest.raises(ValueError):
        await audio_capture.record(max_duration=duration)

    mock_create_subprocess.assert_not_called()
    assert not audio_capture.is_recording


@pytest.mark.asyncio
@patch("asyncio.create_subprocess_exec")
async def test_cancel_with_fast_stream(mock_create_subprocess, audio_config):
    """Test cancellation is honored while the recorder delivers data without pause."""
    capture = PWRecordCapture(audio_config.model_copy(update={"max_duration_s": 2.0}))
    loop = asyncio.get_running_loop()

    for _ in range(20):
        process = make_endless_process(delay=0.001)
        mock_create_subprocess.return_value = process

        record_task = asyncio.create_task(capture.record())
        await asyncio.sleep(0.02)
        started = loop.time()
        record_task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await record_task

        assert loop.time() - started < 0.5
        process.terminate.assert_called_once()
        assert not capture.is_recording
