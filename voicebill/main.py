"""Command line entry point for voicebill."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn, Optional, Sequence, Set

from .audio_capture import PWRecordCapture
from .config import load_config
from .extractor import ItemExtractor
from .logging_setup import setup_logging
from .models import PipelineState, PipelineStateEnum
from .pipeline_manager import PipelineManager
from .service import create_openai_client
from .transcriber import Transcriber

logger = logging.getLogger(__name__)

__all__ = ["run"]  # Export the run function

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

STATUS_LINES = {
    PipelineStateEnum.CAPTURING: "Listening... say the item, quantity and price (Ctrl+C when done)",
    PipelineStateEnum.TRANSCRIBING: "Transcribing...",
    PipelineStateEnum.EXTRACTING: "Understanding the item...",
    PipelineStateEnum.CANCELLED: "Cancelled.",
}


def positive_seconds(value: str) -> float:
    """argparse type for a strictly positive number of seconds."""
    try:
        seconds = float(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from e
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return seconds


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="voicebill",
        description="Speak one invoice item and print it as JSON.",
    )
    parser.add_argument("--config", type=Path, help="Path to the TOML config file.")
    parser.add_argument(
        "--max-duration", type=positive_seconds, help="Recording limit in seconds (max 30)."
    )
    parser.add_argument("--language", help="Language hint, e.g. hi-IN or en.")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    return parser.parse_args(argv)


def print_status(state: PipelineState) -> None:
    """Show a short status line for user-facing states."""
    line = STATUS_LINES.get(state.state)
    if line:
        print(line, file=sys.stderr)


def item_to_json(state: PipelineState) -> str:
    """Serialize the item of a Succeeded state for the invoice form."""
    return json.dumps(state.item.model_dump(mode="json"), ensure_ascii=False)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run a single voice-to-item pipeline.

    Returns:
        Exit code (0 for success, 1 for failure, 130 if cancelled)
    """
    args = parse_args(argv)

    # Load configuration first
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return EXIT_FAILED

    # Setup logging
    log_level = "DEBUG" if args.verbose else config.daemon.log_level
    setup_logging(log_level, config.daemon.computed_log_file)

    try:
        transcription_client = create_openai_client(
            config.transcription.api_key, config.transcription.base_url
        )
        extraction_client = create_openai_client(
            config.extraction.api_key, config.extraction.base_url
        )
    except ValueError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    audio_capture = PWRecordCapture(config.audio)
    transcriber = Transcriber(
        config.transcription,
        transcription_client,
        silence_threshold=config.audio.silence_threshold,
    )
    extractor = ItemExtractor(config.extraction, extraction_client)
    manager = PipelineManager(config, audio_capture, transcriber, extractor)
    manager.add_observer(print_status)

    loop = asyncio.get_running_loop()
    pending: Set[asyncio.Task] = set()

    def cancel_run() -> None:
        task = loop.create_task(manager.cancel())
        pending.add(task)
        task.add_done_callback(pending.discard)

    # Setup signal handlers
    def handle_signal(sig: int) -> None:
        sig_name = signal.Signals(sig).name
        if sig == signal.SIGINT and audio_capture.is_recording:
            logger.info(f"Received {sig_name}, finishing recording...")
            audio_capture.stop()
            return
        logger.info(f"Received {sig_name}, cancelling pipeline run...")
        cancel_run()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        run_handle = manager.start(args.max_duration, args.language)
        state = await run_handle.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await transcription_client.close()
        await extraction_client.close()

    if state.state == PipelineStateEnum.SUCCEEDED:
        print(item_to_json(state))
        return EXIT_OK

    if state.state == PipelineStateEnum.FAILED:
        print(state.error.user_message, file=sys.stderr)
        return EXIT_FAILED

    return EXIT_CANCELLED


def run() -> NoReturn:
    """Entry point for the voicebill command."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"voicebill failed with unhandled exception: {e}")
        sys.exit(EXIT_FAILED)
