"""RNA-seq Dashboard - upload counts, run DESeq2, explore the results."""

__version__ = "0.1.0"

from .config import get_config, Config
from .errors import (
    AnalysisError,
    EngineError,
    SampleMismatch,
    UnreadableFile,
    UnsupportedFormat,
)
from .readers import UploadedFile, read_table
from .validation import validate_inputs
from .session import AnalysisSession, SessionSnapshot
from .orchestrator import AnalysisOrchestrator

__all__ = [
    'get_config',
    'Config',
    'AnalysisError',
    'EngineError',
    'SampleMismatch',
    'UnreadableFile',
    'UnsupportedFormat',
    'UploadedFile',
    'read_table',
    'validate_inputs',
    'AnalysisSession',
    'SessionSnapshot',
    'AnalysisOrchestrator'
]
