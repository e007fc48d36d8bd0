"""Voice-to-invoice-item pipeline."""

from .errors import ErrorKind, PipelineBusyError, PipelineError
from .models import AudioBuffer, ParsedItem, PipelineState, PipelineStateEnum
from .pipeline_manager import PipelineManager, PipelineRun

__all__ = [
    "AudioBuffer",
    "ErrorKind",
    "ParsedItem",
    "PipelineBusyError",
    "PipelineError",
    "PipelineManager",
    "PipelineRun",
    "PipelineState",
    "PipelineStateEnum",
]
