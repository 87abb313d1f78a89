"""
Analysis dataset assembly and gene filtering.

An ``AnalysisDataset`` binds a count matrix, its sample sheet and a design
formula. It is immutable: filtering returns a new dataset.
"""

import logging
import re
from dataclasses import dataclass
from typing import List

import pandas as pd

from .data import validate_count_matrix, validate_sample_alignment
from .exceptions import DegenerateDataError, SchemaError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"(?<![A-Za-z0-9_.])[A-Za-z_][A-Za-z0-9_.]*")
_STRING_LITERAL = re.compile(r"\"[^\"]*\"|'[^']*'")
_KEYWORD_ARGUMENT = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\s*=(?!=)\s*[A-Za-z0-9_.]*")


def design_covariates(design: str) -> List[str]:
    """
    Return the metadata columns referenced by an R-style design formula.

    Function calls such as ``C(condition)`` contribute their arguments, not
    the function name. Order of first appearance is preserved.

    Args:
        design: Formula such as ``"~ batch + condition"``

    Raises:
        SchemaError: If the formula has no ``~`` or names no covariate
    """
    if "~" not in design:
        raise SchemaError(f"Design formula must start with '~': {design!r}")

    rhs = design.split("~", 1)[1]
    # literals and keyword arguments (contr.treatment("Control"), reference=...) are not columns
    rhs = _STRING_LITERAL.sub(" ", rhs)
    rhs = _KEYWORD_ARGUMENT.sub(" ", rhs)
    covariates = []
    for match in _IDENTIFIER.finditer(rhs):
        name = match.group(0)
        following = rhs[match.end():].lstrip()
        if following.startswith("("):
            continue
        if name in covariates:
            continue
        covariates.append(name)

    if not covariates:
        raise SchemaError(f"Design formula names no covariates: {design!r}")
    return covariates


def filter_counts(counts: pd.DataFrame, min_count: int = 10) -> pd.DataFrame:
    """
    Keep genes whose total count across all samples is at least ``min_count``.

    Samples are never dropped. An empty result is returned as-is.

    Args:
        counts: Count matrix (genes x samples)
        min_count: Minimum row total

    Returns:
        Filtered copy of the count matrix
    """
    keep = counts.sum(axis=1) >= min_count
    filtered = counts.loc[keep].copy()
    logger.debug(f"Filtering at min_count={min_count}: kept {len(filtered)} of {len(counts)} genes")
    return filtered


@dataclass(frozen=True)
class AnalysisDataset:
    """Counts, sample sheet and design formula, checked for consistency."""

    counts: pd.DataFrame
    metadata: pd.DataFrame
    design: str

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def gene_ids(self) -> List[str]:
        return list(self.counts.index)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def covariates(self) -> List[str]:
        return design_covariates(self.design)

    def levels(self, covariate: str) -> List[str]:
        """Distinct values of a metadata column, in order of appearance."""
        if covariate not in self.metadata.columns:
            raise SchemaError(f"Covariate '{covariate}' not found in metadata columns {list(self.metadata.columns)}")
        return [str(v) for v in pd.unique(self.metadata[covariate].dropna())]

    def filter(self, min_count: int = 10) -> "AnalysisDataset":
        """Return a new dataset keeping genes with at least ``min_count`` total reads."""
        filtered = filter_counts(self.counts, min_count)
        logger.info(f"Removed {self.n_genes - len(filtered)} low-count genes (total < {min_count}); {len(filtered)} remain")
        return AnalysisDataset(counts=filtered, metadata=self.metadata, design=self.design)


def _is_categorical(series: pd.Series) -> bool:
    return not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype)


def assemble_dataset(counts: pd.DataFrame, metadata: pd.DataFrame, design: str) -> AnalysisDataset:
    """
    Bind counts, metadata and design into an analysis dataset.

    Args:
        counts: Count matrix (genes x samples)
        metadata: Sample sheet (samples x covariates), same samples in the same order
        design: R-style design formula naming metadata columns

    Returns:
        AnalysisDataset holding copies of the inputs

    Raises:
        ShapeError: If counts are invalid or samples do not line up
        SchemaError: If the design names a column missing from the metadata
        DegenerateDataError: If a categorical design covariate has fewer than two levels
    """
    counts = validate_count_matrix(counts)
    validate_sample_alignment(counts, metadata)

    covariates = design_covariates(design)
    missing = [c for c in covariates if c not in metadata.columns]
    if missing:
        raise SchemaError(
            f"Design formula {design!r} references covariates not in metadata: {missing} "
            f"(available: {list(metadata.columns)})"
        )

    for covariate in covariates:
        column = metadata[covariate]
        if column.isna().any():
            raise SchemaError(f"Covariate '{covariate}' has missing values")
        if _is_categorical(column) and column.nunique() < 2:
            raise DegenerateDataError(
                f"Covariate '{covariate}' has fewer than two levels: {column.unique().tolist()}"
            )

    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    counts.columns = counts.columns.astype(str)

    logger.info(
        f"Assembled dataset: {counts.shape[0]} genes x {counts.shape[1]} samples, design {design}"
    )
    return AnalysisDataset(counts=counts, metadata=metadata, design=design)
