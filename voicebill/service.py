"""Shared helpers for the remote OpenAI-compatible services."""

import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from .config import resolve_api_key
from .errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)


def create_openai_client(
    api_key: Optional[str] = None, base_url: Optional[str] = None
) -> AsyncOpenAI:
    """Build a client for one remote service.

    Automatic retries are disabled; a failed request is terminal for the run.

    Raises:
        ValueError: If no API key is configured.
    """
    key = resolve_api_key(api_key)
    if not key:
        raise ValueError(
            "OpenAI API key not configured! Set api_key in the config file "
            "or export OPENAI_API_KEY."
        )

    logger.debug(f"Creating OpenAI client (base_url: {base_url or 'default'})")
    return AsyncOpenAI(api_key=key, base_url=base_url, max_retries=0)


def map_service_error(error: openai.OpenAIError, stage: str) -> PipelineError:
    """Translate an SDK exception into a pipeline error.

    Args:
        error: Exception raised by the OpenAI SDK.
        stage: Pipeline stage that made the request.
    """
    if isinstance(error, openai.APITimeoutError):
        return PipelineError(
            ErrorKind.NETWORK_TIMEOUT,
            "Request to the service timed out",
            cause=error,
            stage=stage,
        )

    if isinstance(error, openai.APIConnectionError):
        return PipelineError(
            ErrorKind.NETWORK_TIMEOUT,
            f"Could not reach the service: {error}",
            cause=error,
            stage=stage,
        )

    if isinstance(error, openai.APIStatusError):
        return PipelineError(
            ErrorKind.SERVICE_ERROR,
            f"Service returned HTTP {error.status_code}: {error.message}",
            cause=error,
            stage=stage,
            raw_response=str(error.body) if error.body is not None else None,
        )

    return PipelineError(
        ErrorKind.SERVICE_ERROR,
        f"Service error: {error}",
        cause=error,
        stage=stage,
    )
