"""DESeq2 engine using rpy2 for differential expression analysis."""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pandas as pd

from rnaseq_dashboard.errors import EngineError
from rnaseq_dashboard.models import (
    RESULT_COLUMNS,
    AnalysisModel,
    ModelInput,
    ResultTable,
    annotate_direction,
)


logger = logging.getLogger(__name__)

# embedded R is single-threaded; every call into it goes through this lock
_R_LOCK = threading.RLock()

# vst() fits its trend on a subsample of 1000 genes drawn from those whose mean
# normalized count exceeds 5, and stops when fewer such genes exist
VST_MIN_GENES = 1000
VST_MIN_MEAN = 5

REQUIRED_R_PACKAGES = ['DESeq2', 'SummarizedExperiment']


def can_use_vst(normalized_counts: pd.DataFrame) -> bool:
    """Whether ``vst()`` accepts a dataset with these normalized counts."""
    expressed = int((normalized_counts.mean(axis=1) > VST_MIN_MEAN).sum())
    return expressed >= VST_MIN_GENES


class DESeq2Engine:
    """Fits DESeq2 models and renders its built-in diagnostics."""

    def __init__(self, fit_type: str = "mean", alpha: float = 0.05):
        """Load rpy2 and the R packages, raising ``EngineError`` if unavailable."""
        self.fit_type = fit_type
        self.alpha = alpha
        with _R_LOCK:
            self._load_rpy2()
            self._check_r_packages()
            self._load_r_packages()

    def _load_rpy2(self):
        try:
            import rpy2.robjects as ro
            from rpy2.robjects import numpy2ri, pandas2ri
            from rpy2.robjects.conversion import localconverter
            from rpy2.robjects.packages import importr
        except ImportError:
            raise EngineError(
                "rpy2 is not installed. Please install it with: pip install 'rnaseq-dashboard[deseq2]'"
            ) from None
        except Exception as e:
            # rpy2 raises RuntimeError/OSError when it cannot locate R itself
            raise EngineError(f"Failed to start R through rpy2: {e}") from e

        self.ro = ro
        self.numpy2ri = numpy2ri
        self.pandas2ri = pandas2ri
        self.localconverter = localconverter
        self.importr = importr

    def _check_r_packages(self):
        """Check if required R packages are installed."""
        utils = self.importr('utils')
        base = self.importr('base')

        installed = set(base.rownames(utils.installed_packages()))
        missing = [pkg for pkg in REQUIRED_R_PACKAGES if pkg not in installed]

        if missing:
            quoted = ', '.join(f"'{p}'" for p in missing)
            raise EngineError(
                f"Required R packages not found: {', '.join(missing)}\n"
                "Please install them in R using:\n"
                "  if (!require('BiocManager', quietly = TRUE))\n"
                "      install.packages('BiocManager')\n"
                f"  BiocManager::install(c({quoted}))"
            )

    def _load_r_packages(self):
        """Load required R packages."""
        try:
            self.deseq2 = self.importr('DESeq2')
            self.summarized_experiment = self.importr('SummarizedExperiment')
            self.grdevices = self.importr('grDevices')
            self.base = self.importr('base')
            # plotMA is a BiocGenerics generic; attach DESeq2 so its method dispatches
            self.ro.r('suppressPackageStartupMessages(library(DESeq2))')
            self.plot_ma_generic = self.ro.r['plotMA']
            self.counts_generic = self.ro.r['counts']
            logger.info("Successfully loaded DESeq2 and dependencies")
        except Exception as e:
            raise EngineError(f"Failed to load R packages: {e}") from e

    def _py2rpy(self, df: pd.DataFrame):
        with self.localconverter(self.ro.default_converter + self.pandas2ri.converter):
            return self.ro.conversion.get_conversion().py2rpy(df)

    def _rpy2py_frame(self, r_df) -> pd.DataFrame:
        with self.localconverter(self.ro.default_converter + self.pandas2ri.converter):
            return self.ro.conversion.get_conversion().rpy2py(r_df)

    def _rpy2py_matrix(self, r_matrix) -> pd.DataFrame:
        with self.localconverter(self.ro.default_converter + self.numpy2ri.converter):
            values = np.asarray(self.ro.conversion.get_conversion().rpy2py(r_matrix))
        return pd.DataFrame(
            values,
            index=list(self.base.rownames(r_matrix)),
            columns=list(self.base.colnames(r_matrix))
        )

    def _convert_to_r_matrix(self, df: pd.DataFrame):
        """Convert pandas DataFrame to R integer matrix."""
        r_matrix = self.base.as_matrix(self._py2rpy(df))
        r_matrix.rownames = self.ro.StrVector([str(i) for i in df.index])
        r_matrix.colnames = self.ro.StrVector([str(c) for c in df.columns])
        return r_matrix

    def fit(self, model_input: ModelInput) -> AnalysisModel:
        """
        Create the DESeqDataSet and run DESeq on it.

        Args:
            model_input: Aligned integer counts, metadata and design factor

        Returns:
            AnalysisModel wrapping the fitted DESeqDataSet
        """
        design = f"~ {model_input.design_factor}"
        logger.info(
            f"Creating DESeqDataSet with design {design} "
            f"({model_input.n_genes} genes, {model_input.n_samples} samples)"
        )
        with _R_LOCK:
            try:
                dds = self.deseq2.DESeqDataSetFromMatrix(
                    countData=self._convert_to_r_matrix(model_input.counts),
                    colData=self._py2rpy(model_input.metadata),
                    design=self.ro.Formula(design)
                )
            except Exception as e:
                raise EngineError(f"Failed to create DESeqDataSet: {e}") from e

            try:
                dds = self.deseq2.DESeq(dds, fitType=self.fit_type)
            except Exception as e:
                raise EngineError(f"DESeq2 analysis failed: {e}") from e

        logger.info("DESeq2 analysis completed successfully")
        return AnalysisModel(self, dds, model_input)

    def results(self, model: AnalysisModel) -> ResultTable:
        """Extract per-gene statistics, keeping the gene order of the counts."""
        with _R_LOCK:
            try:
                res = self.deseq2.results(model.handle)
                res_df = self._rpy2py_frame(self.base.as_data_frame(res))
                genes = list(self.base.rownames(res))
            except Exception as e:
                raise EngineError(f"Failed to extract results: {e}") from e

        res_df = pd.DataFrame(res_df).reset_index(drop=True)
        res_df.columns = RESULT_COLUMNS
        res_df.index = pd.Index(genes, name='gene')
        res_df = annotate_direction(res_df, alpha=self.alpha)

        n_up = (res_df['direction'] == 'up').sum()
        n_down = (res_df['direction'] == 'down').sum()
        logger.info(f"Found {n_up} up-regulated and {n_down} down-regulated genes")

        return ResultTable(frame=res_df, engine=self, handle=res)

    def normalize(self, model: AnalysisModel) -> pd.DataFrame:
        """Variance-stabilized counts (``blind=FALSE``) as genes x samples."""
        with _R_LOCK:
            try:
                normalized = self._rpy2py_matrix(self.counts_generic(model.handle, normalized=True))
                if can_use_vst(normalized):
                    vsd = self.deseq2.vst(model.handle, blind=False)
                else:
                    logger.info(
                        f"Fewer than {VST_MIN_GENES} genes with mean normalized count > "
                        f"{VST_MIN_MEAN}; using varianceStabilizingTransformation"
                    )
                    vsd = self.deseq2.varianceStabilizingTransformation(model.handle, blind=False)
                return self._rpy2py_matrix(self.summarized_experiment.assay(vsd))
            except Exception as e:
                raise EngineError(f"Failed to get VST counts: {e}") from e

    def _render_png(self, draw: Callable[[], None], width: int, height: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="rnaseq-plot-") as tmp:
            path = Path(tmp) / "plot.png"
            self.grdevices.png(file=str(path), width=width, height=height)
            try:
                draw()
            finally:
                self.grdevices.dev_off()
            return path.read_bytes()

    def plot_ma(self, results: ResultTable, width: int = 800, height: int = 600) -> bytes:
        """DESeq2 ``plotMA`` of a result set, as PNG bytes."""
        with _R_LOCK:
            try:
                return self._render_png(
                    lambda: self.plot_ma_generic(results.handle, main="MA Plot"),
                    width, height
                )
            except Exception as e:
                raise EngineError(f"Failed to draw MA plot: {e}") from e

    def plot_dispersion(self, model: AnalysisModel, width: int = 800, height: int = 600) -> bytes:
        """DESeq2 ``plotDispEsts`` of a fitted model, as PNG bytes."""
        with _R_LOCK:
            try:
                return self._render_png(
                    lambda: self.deseq2.plotDispEsts(model.handle, main="Dispersion Estimates"),
                    width, height
                )
            except Exception as e:
                raise EngineError(f"Failed to draw dispersion plot: {e}") from e


_default_engine: Optional[DESeq2Engine] = None


def get_engine(fit_type: str = "mean", alpha: float = 0.05) -> DESeq2Engine:
    """Shared engine instance; R is loaded once per process."""
    global _default_engine
    with _R_LOCK:
        if _default_engine is None:
            _default_engine = DESeq2Engine(fit_type=fit_type, alpha=alpha)
    return _default_engine
