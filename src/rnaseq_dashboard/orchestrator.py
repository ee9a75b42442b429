"""Upload -> validate -> analyze -> commit pipeline.

The orchestrator is presentation-agnostic: progress is reported through a
plain callable receiving :class:`ProgressEvent` objects, and cancellation is a
``threading.Event`` checked at every checkpoint. :class:`AnalysisRun` executes
a pipeline on a background thread so the web process stays responsive while
DESeq2 fits the model.
"""

import enum
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from rnaseq_dashboard.errors import AnalysisCancelled, AnalysisError, EngineError
from rnaseq_dashboard.models import ModelInput, ProgressEvent, ResultTable
from rnaseq_dashboard.readers import UploadedFile, read_upload
from rnaseq_dashboard.session import AnalysisSession
from rnaseq_dashboard.validation import validate_inputs


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

READ = ProgressEvent(0.2, "Reading input files...")
VALIDATE = ProgressEvent(0.4, "Validating data...")
BUILD = ProgressEvent(0.6, "Creating DESeq2 dataset...")
FIT = ProgressEvent(0.8, "Running DESeq2 analysis...")
FINALIZE = ProgressEvent(1.0, "Finalizing results...")

CHECKPOINTS = (READ, VALIDATE, BUILD, FIT, FINALIZE)


class AnalysisOrchestrator:
    """Runs one analysis for a session and commits its outcome atomically."""

    def __init__(
        self,
        session: AnalysisSession,
        engine=None,
        design_factor: str = "condition",
        fit_type: str = "mean",
        upload_dir: Optional[Path] = None
    ):
        self.session = session
        self._engine = engine
        self.design_factor = design_factor
        self.fit_type = fit_type
        self.upload_dir = upload_dir

    @property
    def engine(self):
        if self._engine is None:
            # Imported here so R only loads when an analysis actually runs
            from rnaseq_dashboard.deseq2 import get_engine
            self._engine = get_engine(fit_type=self.fit_type)
        return self._engine

    def _checkpoint(
        self,
        event: ProgressEvent,
        progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event]
    ):
        if cancel is not None and cancel.is_set():
            raise AnalysisCancelled("Analysis cancelled")
        logger.info(f"Session {self.session.session_id}: {event.detail} ({event.fraction:.0%})")
        if progress is not None:
            progress(event)

    def run(
        self,
        counts_file: UploadedFile,
        metadata_file: UploadedFile,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None
    ) -> ResultTable:
        """
        Run the full pipeline and commit its results to the session.

        Args:
            counts_file: Uploaded counts matrix (genes x samples)
            metadata_file: Uploaded sample metadata
            progress: Receives the 0.2 / 0.4 / 0.6 / 0.8 / 1.0 checkpoints in order
            cancel: When set, the run stops at the next checkpoint

        Returns:
            The committed ResultTable

        Raises:
            AnalysisError: any stage failed or the run was cancelled; the
                session keeps its previous state
        """
        self._checkpoint(READ, progress, cancel)
        counts = read_upload(counts_file, self.upload_dir)
        metadata = read_upload(metadata_file, self.upload_dir)

        self._checkpoint(VALIDATE, progress, cancel)
        validated = validate_inputs(counts, metadata, self.design_factor)

        self._checkpoint(BUILD, progress, cancel)
        model_input = ModelInput.from_validated(validated)

        self._checkpoint(FIT, progress, cancel)
        engine = self.engine
        try:
            model = engine.fit(model_input)
        except AnalysisError:
            raise
        except Exception as e:
            raise EngineError(str(e)) from e

        self._checkpoint(FINALIZE, progress, cancel)
        try:
            results = engine.results(model)
        except AnalysisError:
            raise
        except Exception as e:
            raise EngineError(str(e)) from e

        if cancel is not None and cancel.is_set():
            raise AnalysisCancelled("Analysis cancelled")

        self.session.commit(
            counts=validated.counts,
            metadata=validated.metadata,
            model=model,
            results=results
        )
        return results

    def start(self, counts_file: UploadedFile, metadata_file: UploadedFile) -> "AnalysisRun":
        """Start ``run`` on a background thread and register it on the session."""
        run = AnalysisRun(self, counts_file, metadata_file)
        self.session.attach_run(run)
        run.start()
        return run


class RunStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED = (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class AnalysisRun:
    """One background execution of the pipeline."""

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        counts_file: UploadedFile,
        metadata_file: UploadedFile
    ):
        self.run_id = uuid.uuid4().hex[:12]
        self.orchestrator = orchestrator
        self.counts_file = counts_file
        self.metadata_file = metadata_file

        self.status = RunStatus.PENDING
        self.error: Optional[str] = None
        self.result: Optional[ResultTable] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self._events: List[ProgressEvent] = []
        self._events_lock = threading.Lock()
        self._cancel = threading.Event()
        self._finished = threading.Event()
        self._thread = threading.Thread(
            target=self._target,
            name=f"analysis-{self.run_id}",
            daemon=True
        )

    @property
    def done(self) -> bool:
        return self.status in FINISHED

    @property
    def events(self) -> List[ProgressEvent]:
        with self._events_lock:
            return list(self._events)

    @property
    def elapsed(self) -> Optional[float]:
        """Seconds since the run started, frozen once it finishes."""
        if self.started_at is None:
            return None
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    @property
    def progress(self) -> Optional[ProgressEvent]:
        """The most recent checkpoint, or None before the first one."""
        with self._events_lock:
            return self._events[-1] if self._events else None

    def _report(self, event: ProgressEvent):
        with self._events_lock:
            self._events.append(event)

    def start(self):
        self.status = RunStatus.RUNNING
        self.started_at = time.time()
        self._thread.start()

    def cancel(self):
        """Ask the run to stop; it does so at its next checkpoint."""
        if not self.done:
            logger.info(f"Cancellation requested for run {self.run_id}")
            self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def _target(self):
        logger.info(f"Background run {self.run_id} started")
        try:
            self.result = self.orchestrator.run(
                self.counts_file,
                self.metadata_file,
                progress=self._report,
                cancel=self._cancel
            )
        except AnalysisCancelled as e:
            self.error = str(e)
            self.status = RunStatus.CANCELLED
            logger.info(f"Background run {self.run_id} cancelled")
        except AnalysisError as e:
            self.error = str(e)
            self.status = RunStatus.FAILED
            logger.error(f"Background run {self.run_id} failed: {e}")
        except Exception as e:
            self.error = f"Unexpected error: {e}"
            self.status = RunStatus.FAILED
            logger.error(f"Background run {self.run_id} failed: {e}", exc_info=True)
        else:
            self.status = RunStatus.SUCCEEDED
            logger.info(
                f"Background run {self.run_id} completed in {self.elapsed:.1f}s"
            )
        finally:
            self.finished_at = time.time()
            self._finished.set()
