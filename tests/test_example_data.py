"""Tests for the synthetic example dataset."""

import pytest

from rnaseq_dashboard.example_data import simulate_dataset, write_dataset
from rnaseq_dashboard.readers import read_table
from rnaseq_dashboard.validation import validate_inputs


class TestSimulateDataset:
    """Tests for simulate_dataset."""

    def test_shapes(self):
        counts, metadata = simulate_dataset(n_genes=300, n_control=2, n_treatment=4)

        assert counts.shape == (300, 6)
        assert list(counts.columns) == list(metadata.index)
        assert metadata['condition'].value_counts().to_dict() == {'treatment': 4, 'control': 2}
        assert (counts.values >= 0).all()

    def test_reproducible(self):
        first, _ = simulate_dataset(n_genes=100, seed=3)
        second, _ = simulate_dataset(n_genes=100, seed=3)

        assert first.equals(second)

    def test_passes_validation(self):
        counts, metadata = simulate_dataset(n_genes=100, include_gene_names=True)

        validated = validate_inputs(counts, metadata)

        assert 'Gene Name' not in validated.counts.columns
        assert validated.counts.shape == (100, 6)


class TestWriteDataset:
    """Tests for writing example files."""

    @pytest.mark.parametrize("extension", ["csv", "tsv", "txt"])
    def test_files_are_readable(self, tmp_path, extension):
        counts_path, metadata_path = write_dataset(tmp_path, extension=extension, n_genes=50)

        counts = read_table(counts_path)
        metadata = read_table(metadata_path)

        assert counts_path.name == f"sample_counts.{extension}"
        assert counts.shape == (50, 6)
        assert list(metadata.index) == list(counts.columns)
        assert validate_inputs(counts, metadata).counts.shape == (50, 6)
