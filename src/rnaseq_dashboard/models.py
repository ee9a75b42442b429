"""Data containers passed between the pipeline, the engine and the views."""

import threading
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import pandas as pd

from rnaseq_dashboard.validation import ValidatedInputs


RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


@dataclass(frozen=True)
class ProgressEvent:
    """One checkpoint of an analysis run."""
    fraction: float
    detail: str


@dataclass(frozen=True)
class ModelInput:
    """Counts, metadata and design factor handed to the engine's ``fit``."""
    counts: pd.DataFrame
    metadata: pd.DataFrame
    design_factor: str

    @classmethod
    def from_validated(cls, validated: ValidatedInputs) -> "ModelInput":
        metadata = validated.metadata.copy()
        metadata[validated.design_factor] = (
            metadata[validated.design_factor].astype(str).astype("category")
        )
        # Columns follow the metadata row order, as DESeqDataSetFromMatrix expects
        counts = validated.counts.loc[:, list(metadata.index)].round().astype(np.int64)
        return cls(counts=counts, metadata=metadata, design_factor=validated.design_factor)

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]


class AnalysisModel:
    """Fitted model handle.

    ``handle`` is whatever the engine produced (an R ``DESeqDataSet`` for the
    DESeq2 engine). The variance-stabilized matrix is computed on first use
    and kept for the lifetime of the model.
    """

    def __init__(self, engine, handle: Any, model_input: ModelInput):
        self.engine = engine
        self.handle = handle
        self.input = model_input
        self._normalized: Optional[pd.DataFrame] = None
        self._lock = threading.Lock()

    @property
    def design_factor(self) -> str:
        return self.input.design_factor

    @property
    def metadata(self) -> pd.DataFrame:
        return self.input.metadata

    def normalized(self) -> pd.DataFrame:
        """Variance-stabilized expression matrix (genes x samples)."""
        with self._lock:
            if self._normalized is None:
                self._normalized = self.engine.normalize(self)
            return self._normalized

    def __repr__(self):
        return (
            f"AnalysisModel(genes={self.input.n_genes}, samples={self.input.n_samples}, "
            f"design=~{self.design_factor})"
        )


@dataclass(frozen=True)
class ResultTable:
    """Per-gene statistics indexed by gene identifier, in counts order."""
    frame: pd.DataFrame
    engine: Any = None
    handle: Any = None

    def __len__(self):
        return len(self.frame)

    @property
    def genes(self) -> list:
        return list(self.frame.index)

    def direction_counts(self) -> dict:
        counts = self.frame['direction'].value_counts() if 'direction' in self.frame else {}
        return {key: int(counts.get(key, 0)) for key in ('up', 'down')}

    def to_csv(self, *args, **kwargs):
        return self.frame.reset_index().to_csv(*args, **kwargs)


def annotate_direction(
    results: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 0.0
) -> pd.DataFrame:
    """Add the ``direction`` (up / down / not_sig) column to a results frame."""
    results = results.copy()
    significant = results['padj'] < alpha
    results['direction'] = 'not_sig'
    results.loc[significant & (results['log2FoldChange'] > lfc_threshold), 'direction'] = 'up'
    results.loc[significant & (results['log2FoldChange'] < -lfc_threshold), 'direction'] = 'down'
    return results
