"""Shared fixtures: small datasets and an in-memory stand-in for DESeq2."""

import threading

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from rnaseq_dashboard.errors import EngineError
from rnaseq_dashboard.example_data import simulate_dataset
from rnaseq_dashboard.models import AnalysisModel, ResultTable, annotate_direction
from rnaseq_dashboard.readers import DELIMITERS, UploadedFile
from rnaseq_dashboard.session import AnalysisSession


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    n = len(pvalues)
    order = np.argsort(pvalues)
    ranked = pvalues[order] * n / np.arange(1, n + 1)
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]
    adjusted = np.empty(n)
    adjusted[order] = np.clip(ranked, 0, 1)
    return adjusted


class FakeEngine:
    """Deterministic engine with the DESeq2 engine's interface.

    ``fail_on`` names the method that raises ``EngineError``; ``gate`` makes
    ``fit`` block until the event is set.
    """

    def __init__(self, fail_on=None, gate=None):
        self.fail_on = fail_on
        self.gate = gate
        self.fit_started = threading.Event()
        self.fit_calls = 0

    def _maybe_fail(self, name):
        if self.fail_on == name:
            raise EngineError(f"{name} failed: every gene has zero counts")

    def fit(self, model_input):
        self.fit_calls += 1
        self.fit_started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        self._maybe_fail("fit")
        return AnalysisModel(self, {"design": model_input.design_factor}, model_input)

    def results(self, model):
        self._maybe_fail("results")
        counts = model.input.counts.astype(float)
        library = counts.sum(axis=0)
        normalized = counts / (library / library.mean())

        groups = model.metadata[model.design_factor]
        levels = sorted(groups.astype(str).unique())
        reference = normalized.loc[:, (groups.astype(str) == levels[0]).values].mean(axis=1)
        other = normalized.loc[:, (groups.astype(str) == levels[-1]).values].mean(axis=1)

        lfc = np.log2((other + 0.5) / (reference + 0.5))
        stat = lfc / 0.5
        pvalue = 2 * norm.sf(np.abs(stat))
        frame = pd.DataFrame({
            'baseMean': normalized.mean(axis=1),
            'log2FoldChange': lfc,
            'lfcSE': 0.5,
            'stat': stat,
            'pvalue': pvalue,
            'padj': benjamini_hochberg(np.asarray(pvalue)),
        }, index=pd.Index(counts.index, name='gene'))
        return ResultTable(frame=annotate_direction(frame), engine=self, handle=None)

    def normalize(self, model):
        self._maybe_fail("normalize")
        return np.log2(model.input.counts.astype(float) + 1)

    def plot_ma(self, results):
        self._maybe_fail("plot")
        return PNG_BYTES

    def plot_dispersion(self, model):
        self._maybe_fail("plot")
        return PNG_BYTES


def make_upload(df: pd.DataFrame, filename: str) -> UploadedFile:
    sep = DELIMITERS.get(filename.rsplit('.', 1)[-1].lower(), ',')
    return UploadedFile(filename=filename, content=df.to_csv(sep=sep).encode())


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def session():
    return AnalysisSession("test-session")


@pytest.fixture
def small_counts():
    """Two genes by three samples."""
    return pd.DataFrame(
        {'S1': [10, 200], 'S2': [12, 180], 'S3': [40, 20]},
        index=pd.Index(['G1', 'G2'], name='gene_id')
    )


@pytest.fixture
def small_metadata():
    return pd.DataFrame(
        {'condition': ['cond_a', 'cond_a', 'cond_b']},
        index=pd.Index(['S1', 'S2', 'S3'], name='sample')
    )


@pytest.fixture
def dataset():
    """200 genes, three controls and three treatments."""
    return simulate_dataset(n_genes=200, n_de_genes=20, seed=7)


@pytest.fixture
def fitted(engine, dataset):
    """(model, results) fitted by the fake engine on ``dataset``."""
    from rnaseq_dashboard.models import ModelInput
    from rnaseq_dashboard.validation import validate_inputs

    counts, metadata = dataset
    model = engine.fit(ModelInput.from_validated(validate_inputs(counts, metadata)))
    return model, engine.results(model)
