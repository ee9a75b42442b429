"""Data validation module for count matrices and metadata."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field

from rnaseq_dashboard.errors import InvalidCounts, InvalidMetadata, SampleMismatch


logger = logging.getLogger(__name__)

# Annotation column some count exports carry next to the sample columns.
# Its presence suggests an upstream format mismatch rather than a general rule.
ANNOTATION_COLUMNS = ("Gene Name",)


class ValidationWarning(BaseModel):
    """Warning message from validation."""
    message: str
    severity: str = Field(default="warning")  # warning, info


class ValidationResult(BaseModel):
    """Result of data validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class CountMatrixSchema(BaseModel):
    """Schema for count matrix validation."""
    n_genes: int
    n_samples: int
    sample_ids: List[str]
    has_negative: bool
    has_non_integer: bool
    has_missing: bool
    library_sizes: Dict[str, float]


class MetadataSchema(BaseModel):
    """Schema for metadata validation."""
    n_samples: int
    sample_ids: List[str]
    columns: List[str]
    design_factor: Optional[str] = None
    n_conditions: Optional[int] = None
    replicates_per_condition: Optional[Dict[str, int]] = None


@dataclass
class ValidatedInputs:
    """Counts and metadata that passed validation, ready for model building."""
    counts: pd.DataFrame
    metadata: pd.DataFrame
    design_factor: str
    warnings: List[ValidationWarning] = field(default_factory=list)


def drop_annotation_columns(counts: pd.DataFrame) -> pd.DataFrame:
    """Remove non-sample annotation columns such as ``Gene Name``."""
    present = [col for col in ANNOTATION_COLUMNS if col in counts.columns]
    if not present:
        return counts
    logger.warning(
        f"Dropping annotation column(s) {present} from counts; "
        "the counts file may not follow the expected layout"
    )
    return counts.drop(columns=present)


def missing_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> List[str]:
    """Metadata sample ids absent from the counts columns, in metadata order."""
    count_samples = set(counts.columns)
    missing = []
    for sample in metadata.index:
        if sample not in count_samples and sample not in missing:
            missing.append(sample)
    return missing


def validate_count_matrix(counts: pd.DataFrame) -> Tuple[ValidationResult, Optional[CountMatrixSchema]]:
    """
    Validate count matrix.

    Args:
        counts: Count matrix DataFrame (genes x samples)

    Returns:
        Tuple of (ValidationResult, CountMatrixSchema)
    """
    errors = []
    warnings = []

    if counts.empty:
        errors.append("Count matrix is empty")
        return ValidationResult(valid=False, errors=errors), None

    n_genes, n_samples = counts.shape

    # Check for duplicate gene IDs
    if counts.index.duplicated().any():
        duplicates = sorted(set(counts.index[counts.index.duplicated()]))
        errors.append(f"Count matrix contains duplicate gene IDs: {', '.join(duplicates)}")

    # Check for duplicate sample IDs
    if counts.columns.duplicated().any():
        duplicates = sorted(set(counts.columns[counts.columns.duplicated()]))
        errors.append(f"Count matrix contains duplicate sample IDs: {', '.join(duplicates)}")

    # Numeric checks only make sense once every column parsed as numbers
    non_numeric = [
        str(col) for col, dtype in zip(counts.columns, counts.dtypes)
        if not pd.api.types.is_numeric_dtype(dtype)
    ]
    if non_numeric:
        errors.append(f"Count matrix has non-numeric columns: {', '.join(non_numeric)}")
        return ValidationResult(valid=False, errors=errors), None

    values = counts.to_numpy(dtype=float)

    has_missing = bool(np.isnan(values).any())
    if has_missing:
        n_missing = int(np.isnan(values).sum())
        errors.append(f"Count matrix contains {n_missing} missing values")

    has_negative = bool((values < 0).any())
    if has_negative:
        errors.append("Count matrix contains negative values")

    finite = values[np.isfinite(values)]
    has_non_integer = not np.array_equal(finite, np.round(finite))
    if has_non_integer:
        errors.append("Count matrix contains non-integer values; raw read counts are required")

    library_sizes = {str(k): float(v) for k, v in counts.sum(axis=0).items()}
    for sample, size in library_sizes.items():
        if size == 0:
            warnings.append(ValidationWarning(
                message=f"Sample '{sample}' has no reads",
                severity="warning"
            ))

    schema = CountMatrixSchema(
        n_genes=n_genes,
        n_samples=n_samples,
        sample_ids=[str(c) for c in counts.columns],
        has_negative=has_negative,
        has_non_integer=has_non_integer,
        has_missing=has_missing,
        library_sizes=library_sizes
    )

    summary = {
        "n_genes": n_genes,
        "n_samples": n_samples,
        "total_counts": float(np.nansum(values)),
    }

    result = ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
        summary=summary
    )

    return result, schema


def validate_metadata(
    metadata: pd.DataFrame,
    design_factor: str = "condition"
) -> Tuple[ValidationResult, Optional[MetadataSchema]]:
    """
    Validate metadata.

    Args:
        metadata: Metadata DataFrame (samples x annotations)
        design_factor: Name of the categorical column used as the design

    Returns:
        Tuple of (ValidationResult, MetadataSchema)
    """
    errors = []
    warnings = []

    if metadata.empty and len(metadata.columns) == 0:
        errors.append("Metadata is empty")
        return ValidationResult(valid=False, errors=errors), None

    sample_ids = [str(s) for s in metadata.index]
    columns = [str(c) for c in metadata.columns]

    if metadata.index.duplicated().any():
        duplicates = sorted(set(metadata.index[metadata.index.duplicated()]))
        errors.append(f"Metadata contains duplicate sample IDs: {', '.join(duplicates)}")

    replicates_per_condition = None
    n_conditions = None

    if design_factor not in metadata.columns:
        errors.append(f"Design column '{design_factor}' not found in metadata")
    else:
        conditions = metadata[design_factor]
        if conditions.isna().any():
            errors.append(f"Design column '{design_factor}' contains missing values")

        condition_counts = conditions.dropna().astype(str).value_counts()
        replicates_per_condition = {str(k): int(v) for k, v in condition_counts.items()}
        n_conditions = len(condition_counts)

        if n_conditions < 2:
            errors.append(
                f"Design column '{design_factor}' needs at least two conditions "
                f"to compare (found {n_conditions})"
            )

        for condition, count in replicates_per_condition.items():
            if count < 2:
                warnings.append(ValidationWarning(
                    message=f"Condition '{condition}' has only {count} replicate. "
                            "Dispersion estimates rely on the other conditions.",
                    severity="warning"
                ))

    schema = MetadataSchema(
        n_samples=len(metadata),
        sample_ids=sample_ids,
        columns=columns,
        design_factor=design_factor,
        n_conditions=n_conditions,
        replicates_per_condition=replicates_per_condition
    )

    summary = {
        "n_samples": len(metadata),
        "n_columns": len(columns),
        "columns": columns
    }
    if replicates_per_condition:
        summary["conditions"] = replicates_per_condition

    result = ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
        summary=summary
    )

    return result, schema


def validate_inputs(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design_factor: str = "condition"
) -> ValidatedInputs:
    """
    Validate counts and metadata together before building the model.

    Metadata sample ids must be a subset of the counts columns. Count columns
    that the metadata does not describe are kept in the returned matrix but
    ignored by the analysis.

    Raises:
        SampleMismatch: metadata names samples missing from the counts
        InvalidMetadata: the design column is absent or unusable
        InvalidCounts: analysed count columns are not non-negative integers
    """
    counts = drop_annotation_columns(counts)

    missing = missing_samples(counts, metadata)
    if missing:
        logger.error(f"Sample mismatch: {missing} not found in counts columns")
        raise SampleMismatch(missing)

    meta_result, _ = validate_metadata(metadata, design_factor=design_factor)
    if not meta_result.valid:
        raise InvalidMetadata(meta_result.errors)

    analysed = counts.loc[:, counts.columns.isin(metadata.index)]
    counts_result, _ = validate_count_matrix(analysed)
    problems = list(counts_result.errors)

    # Repeats among the ignored columns still break unique sample ids
    repeated = set(counts.columns[counts.columns.duplicated()]) - set(analysed.columns)
    if repeated:
        problems.append(
            f"Count matrix contains duplicate sample IDs: {', '.join(sorted(map(str, repeated)))}"
        )
    if problems:
        raise InvalidCounts(problems)

    warnings = meta_result.warnings + counts_result.warnings
    unused = [str(c) for c in counts.columns if c not in set(metadata.index)]
    if unused:
        warnings.append(ValidationWarning(
            message=f"Samples in count matrix but not in metadata are ignored: {', '.join(unused)}",
            severity="info"
        ))

    for warning in warnings:
        logger.warning(warning.message)

    return ValidatedInputs(
        counts=counts,
        metadata=metadata,
        design_factor=design_factor,
        warnings=warnings
    )
