"""Per-session analysis state."""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import pandas as pd

from rnaseq_dashboard.errors import RunInProgress
from rnaseq_dashboard.models import AnalysisModel, ResultTable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of everything one analysis run produced.

    Fields are ``None`` until the first successful run. A commit replaces the
    snapshot as a whole, so readers never see fields from two different runs.
    """
    counts: Optional[pd.DataFrame] = None
    metadata: Optional[pd.DataFrame] = None
    model: Optional[AnalysisModel] = None
    results: Optional[ResultTable] = None
    generation: int = 0

    @property
    def is_empty(self) -> bool:
        return self.generation == 0


class AnalysisSession:
    """State for one browser session: the committed snapshot and the active run."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self._lock = threading.Lock()
        self._snapshot = SessionSnapshot()
        self._run = None
        self.last_seen = time.monotonic()

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def current_run(self):
        return self._run

    def touch(self):
        self.last_seen = time.monotonic()

    def commit(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        model: AnalysisModel,
        results: ResultTable
    ) -> SessionSnapshot:
        """Swap in the output of a finished run as one new snapshot."""
        with self._lock:
            snapshot = SessionSnapshot(
                counts=counts,
                metadata=metadata,
                model=model,
                results=results,
                generation=self._snapshot.generation + 1
            )
            self._snapshot = snapshot
        logger.info(f"Session {self.session_id}: committed state generation {snapshot.generation}")
        return snapshot

    def attach_run(self, run):
        """Register ``run`` as the active run unless another one is still going."""
        with self._lock:
            if self._run is not None and not self._run.done:
                raise RunInProgress("An analysis is already running for this session")
            self._run = run


class SessionRegistry:
    """Maps session ids to sessions and forgets sessions left idle too long."""

    def __init__(self, ttl_seconds: float = 4 * 60 * 60):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, AnalysisSession] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return session_id in self._sessions

    def get(self, session_id: str) -> AnalysisSession:
        """Return the session for ``session_id``, creating it on first use."""
        with self._lock:
            self._prune()
            session = self._sessions.get(session_id)
            if session is None:
                session = AnalysisSession(session_id)
                self._sessions[session_id] = session
                logger.info(f"Started session {session_id}")
            session.touch()
            return session

    def _prune(self):
        now = time.monotonic()
        for session_id, session in list(self._sessions.items()):
            run = session.current_run
            if run is not None and not run.done:
                continue
            if now - session.last_seen > self.ttl_seconds:
                del self._sessions[session_id]
                logger.info(f"Expired idle session {session_id}")
