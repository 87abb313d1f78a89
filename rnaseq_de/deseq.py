"""
DESeq2 model fitting, contrast testing and fold-change shrinkage.

Normalization, dispersion estimation, GLM fitting, Wald tests, multiple
testing correction and apeGLM shrinkage are all done by pydeseq2. This module
checks inputs, runs each step on a private copy and hands back immutable
result values, so a fitted model or result table never changes after it is
returned.
"""

import copy
import logging
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Sequence

import numpy as np
import pandas as pd

from .dataset import AnalysisDataset
from .exceptions import DegenerateDataError, SchemaError
from .results import results_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contrast:
    """Two levels of one covariate: ``tested`` is compared against ``reference``."""

    factor: str
    tested: str
    reference: str

    @classmethod
    def from_sequence(cls, values: Sequence[str]) -> "Contrast":
        if isinstance(values, Contrast):
            return values
        if len(values) != 3:
            raise SchemaError(f"Contrast must be [factor, tested_level, reference_level], got {list(values)}")
        factor, tested, reference = (str(v) for v in values)
        return cls(factor=factor, tested=tested, reference=reference)

    def as_list(self) -> List[str]:
        return [self.factor, self.tested, self.reference]

    @property
    def label(self) -> str:
        return f"{self.factor}_{self.tested}_vs_{self.reference}"

    def coefficient_candidates(self) -> List[str]:
        """Names pydeseq2 may give the coefficient of ``tested`` vs ``reference``."""
        return [
            f"{self.factor}[T.{self.tested}]",
            self.label,
        ]


@dataclass(frozen=True)
class FittedModel:
    """A dataset together with its fitted pydeseq2 ``DeseqDataSet``."""

    dataset: AnalysisDataset
    dds: Any
    n_cpus: int = 1

    @property
    def size_factors(self) -> pd.Series:
        if "size_factors" in self.dds.obs:
            values = self.dds.obs["size_factors"]
        else:
            values = self.dds.obsm["size_factors"]
        return pd.Series(np.asarray(values), index=list(self.dds.obs_names), name="size_factor")

    @property
    def normalized_counts(self) -> pd.DataFrame:
        """Counts divided by size factors, genes x samples."""
        normed = np.asarray(self.dds.layers["normed_counts"])
        return pd.DataFrame(normed.T, index=list(self.dds.var_names), columns=list(self.dds.obs_names))

    @property
    def coefficients(self) -> List[str]:
        return list(self.dds.varm["LFC"].columns)

    def _gene_values(self, key: str) -> np.ndarray:
        # pydeseq2 >= 0.5 keeps per-gene estimates in var; older releases used varm
        if key in self.dds.var.columns:
            return np.asarray(self.dds.var[key])
        if key in self.dds.varm:
            return np.asarray(self.dds.varm[key])
        raise KeyError(f"Fitted model has no per-gene '{key}' estimates")

    @property
    def dispersion_table(self) -> pd.DataFrame:
        """Gene-wise, trend-fitted and final (shrunken) dispersions with mean normalized counts."""
        table = pd.DataFrame(
            {
                "mean_normalized": self.normalized_counts.mean(axis=1).to_numpy(),
                "genewise": self._gene_values("genewise_dispersions"),
                "fitted": self._gene_values("fitted_dispersions"),
                "final": self._gene_values("dispersions"),
            },
            index=list(self.dds.var_names),
        )
        table.index.name = "gene_id"
        return table


@dataclass(frozen=True)
class DEResult:
    """Per-gene test results for one contrast."""

    table: pd.DataFrame
    contrast: Contrast
    alpha: float
    stats: Any
    model: FittedModel
    shrunk: bool = False
    shrink_coeff: Optional[str] = None

    @property
    def n_tested(self) -> int:
        return len(self.table)


def _inference(n_cpus: int):
    from pydeseq2.default_inference import DefaultInference

    return DefaultInference(n_cpus=n_cpus)


def validate_contrast(
    dataset: AnalysisDataset,
    contrast: Contrast,
    strict_two_level: bool = False,
) -> None:
    """
    Check that a contrast can be tested against a dataset.

    Args:
        dataset: Assembled dataset
        contrast: Contrast to check
        strict_two_level: Reject covariates with more than two levels

    Raises:
        SchemaError: If the factor or either level is missing, the levels
            coincide, or the factor is not part of the design
    """
    if contrast.factor not in dataset.metadata.columns:
        raise SchemaError(f"Contrast factor '{contrast.factor}' not found in metadata")

    if contrast.factor not in dataset.covariates:
        raise SchemaError(
            f"Contrast factor '{contrast.factor}' is not part of design {dataset.design!r}"
        )

    if contrast.tested == contrast.reference:
        raise SchemaError(f"Contrast compares level '{contrast.tested}' with itself")

    levels = dataset.levels(contrast.factor)
    for level in (contrast.tested, contrast.reference):
        if level not in levels:
            raise SchemaError(
                f"Contrast level '{level}' not found in factor '{contrast.factor}' (levels: {levels})"
            )

    if len(levels) > 2:
        if strict_two_level:
            raise SchemaError(
                f"Factor '{contrast.factor}' has {len(levels)} levels {levels}; "
                "strict_two_level only allows two"
            )
        logger.warning(
            f"Factor '{contrast.factor}' has {len(levels)} levels; testing "
            f"{contrast.tested} vs {contrast.reference} only"
        )


def relevel_metadata(metadata: pd.DataFrame, contrast: Contrast) -> pd.DataFrame:
    """
    Return a copy of ``metadata`` whose contrast factor has ``reference`` as its first level.

    The first category is the base level of the fitted model, so the tested
    level gets its own ``factor[T.tested]`` coefficient. Numeric factors are
    left untouched.
    """
    metadata = metadata.copy()
    column = metadata[contrast.factor]
    if pd.api.types.is_numeric_dtype(column) and not isinstance(column.dtype, pd.CategoricalDtype):
        return metadata

    values = column.astype(str)
    others = [level for level in pd.unique(values) if level != contrast.reference]
    metadata[contrast.factor] = pd.Categorical(values, categories=[contrast.reference, *others])
    return metadata


def fit_model(
    dataset: AnalysisDataset,
    n_cpus: int = 1,
    refit_cooks: bool = True,
    contrast: Optional[Sequence[str]] = None,
) -> FittedModel:
    """
    Estimate size factors and dispersions and fit the negative binomial GLM.

    Args:
        dataset: Assembled (and usually filtered) dataset
        n_cpus: Worker processes for pydeseq2
        refit_cooks: Refit genes flagged as Cook's distance outliers
        contrast: When given, its reference level becomes the model's base
            level so the contrast can later be shrunk; otherwise the first
            level in sorted order is the base

    Returns:
        FittedModel wrapping the fitted ``DeseqDataSet``

    Raises:
        DegenerateDataError: If the dataset has no genes left
        SchemaError: If ``contrast`` does not fit the dataset
    """
    from pydeseq2.dds import DeseqDataSet

    if dataset.n_genes == 0:
        raise DegenerateDataError("No genes left to model; lower the minimum count threshold")

    metadata = dataset.metadata
    if contrast is not None:
        contrast = Contrast.from_sequence(contrast)
        validate_contrast(dataset, contrast)
        metadata = relevel_metadata(metadata, contrast)
        logger.debug(f"Using '{contrast.reference}' as base level of '{contrast.factor}'")

    logger.info(f"Fitting DESeq2 model on {dataset.n_genes} genes with design {dataset.design}")

    dds = DeseqDataSet(
        counts=dataset.counts.T.copy(),
        metadata=metadata.copy(),
        design=dataset.design,
        refit_cooks=refit_cooks,
        inference=_inference(n_cpus),
        quiet=True,
    )
    dds.deseq2()

    logger.debug(f"Fitted coefficients: {list(dds.varm['LFC'].columns)}")
    return FittedModel(dataset=dataset, dds=dds, n_cpus=n_cpus)


def wald_test(
    model: FittedModel,
    contrast: Sequence[str],
    alpha: float = 0.05,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    strict_two_level: bool = False,
) -> DEResult:
    """
    Run the Wald test for one contrast and apply Benjamini-Hochberg correction.

    Args:
        model: Fitted model
        contrast: ``[factor, tested_level, reference_level]``
        alpha: Significance level used by independent filtering
        cooks_filter: Set p-values of Cook's outliers to NaN
        independent_filter: Optimise the mean-count filter for adjusted p-values
        strict_two_level: Reject factors with more than two levels

    Returns:
        DEResult holding the per-gene table
    """
    from pydeseq2.ds import DeseqStats

    contrast = Contrast.from_sequence(contrast)
    validate_contrast(model.dataset, contrast, strict_two_level=strict_two_level)

    logger.info(f"Running Wald test for {contrast.tested} vs {contrast.reference} ({contrast.factor})")

    stats = DeseqStats(
        copy.deepcopy(model.dds),
        contrast=contrast.as_list(),
        alpha=alpha,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        inference=_inference(model.n_cpus),
        quiet=True,
    )
    stats.summary()

    table = results_table(stats.results_df)
    logger.info(f"Tested {len(table)} genes; {int((table['padj'] < alpha).sum())} with padj < {alpha}")
    return DEResult(table=table, contrast=contrast, alpha=alpha, stats=stats, model=model)


def resolve_coefficient(model: FittedModel, contrast: Contrast, coeff: Optional[str] = None) -> str:
    """
    Find the model coefficient matching a contrast.

    Args:
        model: Fitted model
        contrast: Contrast whose coefficient is needed
        coeff: Explicit coefficient name to check instead

    Raises:
        SchemaError: If the coefficient does not exist in the model
    """
    available = model.coefficients
    if coeff is not None:
        if coeff not in available:
            raise SchemaError(f"Coefficient '{coeff}' not in model (available: {available})")
        return coeff

    for candidate in contrast.coefficient_candidates():
        if candidate in available:
            return candidate

    raise SchemaError(
        f"No model coefficient corresponds to {contrast.tested} vs {contrast.reference}; "
        f"the model needs '{contrast.reference}' as its base level; fit it with this contrast "
        f"(available: {available})"
    )


def shrink_lfc(result: DEResult, coeff: Optional[str] = None) -> DEResult:
    """
    Shrink log2 fold changes with the apeGLM prior.

    The input result is left untouched; shrinkage runs on a copy of its
    ``DeseqStats`` and a new DEResult is returned with the same genes, p-values
    and adjusted p-values but shrunken ``log2FoldChange`` and ``lfcSE``.

    Args:
        result: Unshrunk test result
        coeff: Model coefficient to shrink; derived from the contrast when omitted

    Returns:
        New DEResult with ``shrunk=True``
    """
    coeff = resolve_coefficient(result.model, result.contrast, coeff)
    logger.info(f"Shrinking log2 fold changes for coefficient {coeff}")

    stats = copy.deepcopy(result.stats)
    stats.lfc_shrink(coeff=coeff)

    table = results_table(stats.results_df)
    if list(table.index) != list(result.table.index):
        raise RuntimeError("Shrinkage changed the set of genes in the result table")

    return replace(result, table=table, stats=stats, shrunk=True, shrink_coeff=coeff)


def run_deseq(
    dataset: AnalysisDataset,
    contrast: Sequence[str],
    alpha: float = 0.05,
    shrink: bool = False,
    shrink_coeff: Optional[str] = None,
    n_cpus: int = 1,
    refit_cooks: bool = True,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    strict_two_level: bool = False,
) -> DEResult:
    """Fit, test and optionally shrink in one call."""
    contrast = Contrast.from_sequence(contrast)
    # fail on a bad contrast before spending time on the fit
    validate_contrast(dataset, contrast, strict_two_level=strict_two_level)

    model = fit_model(dataset, n_cpus=n_cpus, refit_cooks=refit_cooks, contrast=contrast)
    result = wald_test(
        model,
        contrast,
        alpha=alpha,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        strict_two_level=strict_two_level,
    )
    if shrink:
        result = shrink_lfc(result, coeff=shrink_coeff)
    return result
