"""Synthetic RNA-seq datasets for trying out the dashboard."""

import logging
from pathlib import Path
from typing import Tuple, Union

import numpy as np
import pandas as pd

from rnaseq_dashboard.readers import DELIMITERS, normalize_extension


logger = logging.getLogger(__name__)


def simulate_dataset(
    n_genes: int = 2000,
    n_control: int = 3,
    n_treatment: int = 3,
    n_de_genes: int = 200,
    fold_change_range: Tuple[float, float] = (2, 5),
    include_gene_names: bool = False,
    seed: int = 42
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Simulate negative-binomial counts with a block of differentially expressed genes.

    Args:
        n_genes: Total number of genes
        n_control: Number of control samples
        n_treatment: Number of treatment samples
        n_de_genes: Number of differentially expressed genes (half up, half down)
        fold_change_range: (min, max) fold change for DE genes
        include_gene_names: Add a ``Gene Name`` annotation column to the counts
        seed: Random seed for reproducibility

    Returns:
        Tuple of (counts, metadata); metadata has a ``condition`` column
    """
    rng = np.random.default_rng(seed)
    n_samples = n_control + n_treatment

    gene_ids = [f"ENSG{i:011d}" for i in range(1, n_genes + 1)]
    sample_names = (
        [f"Control_{i + 1}" for i in range(n_control)] +
        [f"Treatment_{i + 1}" for i in range(n_treatment)]
    )

    base_expression = rng.lognormal(mean=5, sigma=2, size=n_genes)

    de_indices = rng.choice(n_genes, min(n_de_genes, n_genes), replace=False)
    n_up = len(de_indices) // 2
    treatment_expression = base_expression.copy()
    treatment_expression[de_indices[:n_up]] *= rng.uniform(*fold_change_range, n_up)
    treatment_expression[de_indices[n_up:]] /= rng.uniform(
        *fold_change_range, len(de_indices) - n_up
    )

    counts = np.zeros((n_genes, n_samples), dtype=np.int64)
    for j in range(n_samples):
        mean = base_expression if j < n_control else treatment_expression
        dispersion = rng.uniform(0.05, 0.2, n_genes)
        counts[:, j] = rng.negative_binomial(n=1 / dispersion, p=1 / (1 + mean * dispersion))

    counts_df = pd.DataFrame(counts, index=pd.Index(gene_ids, name='gene_id'), columns=sample_names)
    if include_gene_names:
        counts_df.insert(0, 'Gene Name', [f"GENE{i}" for i in range(1, n_genes + 1)])

    metadata_df = pd.DataFrame(
        {'condition': ['control'] * n_control + ['treatment'] * n_treatment},
        index=pd.Index(sample_names, name='sample')
    )

    return counts_df, metadata_df


def to_delimited(df: pd.DataFrame, extension: str = 'csv') -> str:
    """Serialize a table the way the dashboard's reader expects it."""
    return df.to_csv(sep=DELIMITERS[normalize_extension(extension)])


def write_dataset(
    output_dir: Union[str, Path],
    extension: str = 'csv',
    **kwargs
) -> Tuple[Path, Path]:
    """Simulate a dataset and write ``sample_counts`` / ``sample_metadata`` files."""
    ext = normalize_extension(extension)
    counts, metadata = simulate_dataset(**kwargs)

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    counts_path = output_path / f"sample_counts.{ext}"
    metadata_path = output_path / f"sample_metadata.{ext}"
    counts_path.write_text(to_delimited(counts, ext))
    metadata_path.write_text(to_delimited(metadata, ext))

    logger.info(
        f"Wrote {counts.shape[0]} genes x {metadata.shape[0]} samples to {output_path.absolute()}"
    )
    return counts_path, metadata_path


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    write_dataset("examples")
