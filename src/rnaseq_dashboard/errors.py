"""Exception hierarchy for the analysis pipeline."""

from typing import List, Optional, Sequence


class AnalysisError(Exception):
    """Base class for every failure that aborts an analysis run."""
    pass


class UnsupportedFormat(AnalysisError):
    """Raised when an uploaded file has an unrecognised extension."""

    def __init__(self, extension: str, filename: Optional[str] = None):
        self.extension = extension
        self.filename = filename
        shown = f".{extension}" if extension else "(none)"
        where = f" for '{filename}'" if filename else ""
        super().__init__(
            f"Unsupported file type{where}: {shown}. Use .csv, .tsv or .txt"
        )


class UnreadableFile(AnalysisError):
    """Raised when a file cannot be opened or parsed as delimited text."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Could not read '{filename}': {reason}")


class InputValidationError(AnalysisError):
    """Base class for problems found while validating the uploaded tables."""

    def __init__(self, message: str, problems: Sequence[str] = ()):
        self.problems: List[str] = list(problems)
        super().__init__(message)


class SampleMismatch(InputValidationError):
    """Metadata lists samples that are not columns of the counts matrix."""

    def __init__(self, missing: Sequence[str]):
        self.missing: List[str] = list(missing)
        super().__init__(
            "Metadata samples not found in counts columns: " + ", ".join(self.missing),
            problems=self.missing,
        )


class InvalidCounts(InputValidationError):
    """The counts matrix breaks the non-negative integer / unique id rules."""

    def __init__(self, problems: Sequence[str]):
        super().__init__("Invalid counts matrix: " + "; ".join(problems), problems)


class InvalidMetadata(InputValidationError):
    """The metadata cannot be used as a design for the analysis."""

    def __init__(self, problems: Sequence[str]):
        super().__init__("Invalid metadata: " + "; ".join(problems), problems)


class EngineError(AnalysisError):
    """Exception for DESeq2-related errors; the engine message is kept verbatim."""
    pass


class AnalysisCancelled(AnalysisError):
    """The run was cancelled before its results were committed."""
    pass


class RunInProgress(AnalysisError):
    """A session already has an active analysis run."""
    pass


class NoDataAvailable(Exception):
    """A view was asked to render before the state it needs exists."""

    def __init__(self, requirement: str):
        self.requirement = requirement
        super().__init__(f"No {requirement} available yet")
