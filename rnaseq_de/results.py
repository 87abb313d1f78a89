"""
Result extraction, summarization and export.

This module turns pydeseq2 result frames into the per-gene result table,
counts significant genes the way DESeq2's ``summary()`` does and writes the
table to disk.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np
import pandas as pd

from .exceptions import SchemaError
from .utils import write_table_atomic

logger = logging.getLogger(__name__)

GENE_ID = "gene_id"
RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "statistic", "pvalue", "padj"]

_COLUMN_ALIASES = {
    "stat": "statistic",
}


def results_table(frame: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize a result frame to the standard per-gene schema.

    Args:
        frame: pydeseq2 ``results_df`` or a previously exported table

    Returns:
        Copy indexed by ``gene_id`` with columns RESULT_COLUMNS

    Raises:
        SchemaError: If a required column is missing
    """
    table = frame.rename(columns=_COLUMN_ALIASES).copy()

    if GENE_ID in table.columns:
        table = table.set_index(GENE_ID)

    missing = [c for c in RESULT_COLUMNS if c not in table.columns]
    if missing:
        raise SchemaError(f"Result table is missing columns: {missing}")

    table = table[RESULT_COLUMNS].astype(float)
    table.index = table.index.astype(str)
    table.index.name = GENE_ID
    return table


def significance_mask(
    table: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
) -> pd.Series:
    """True where ``padj < alpha`` and ``|log2FoldChange| > lfc_threshold``; NaN counts as False."""
    padj = table["padj"]
    lfc = table["log2FoldChange"]
    return (padj < alpha) & (lfc.abs() > lfc_threshold)


def significant_genes(
    table: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
) -> pd.DataFrame:
    """Rows passing the significance predicate, smallest padj first."""
    hits = table.loc[significance_mask(table, alpha, lfc_threshold)]
    return hits.sort_values("padj")


def top_genes(table: pd.DataFrame, n: int = 20) -> pd.DataFrame:
    """The ``n`` genes with the smallest adjusted p-values (undefined padj skipped)."""
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    ranked = table.dropna(subset=["padj"]).sort_values(["padj", "pvalue"])
    return ranked.head(n)


def summarize_results(
    table: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 0.0,
) -> Dict[str, Any]:
    """
    Count tested, significant, up- and down-regulated genes.

    Mirrors DESeq2's ``summary()``: outliers are genes whose p-value was set
    to NaN by Cook's distance filtering, low counts are genes whose adjusted
    p-value was removed by independent filtering.

    Args:
        table: Per-gene result table
        alpha: Adjusted p-value cutoff
        lfc_threshold: Absolute log2 fold change cutoff (0 = sign only)

    Returns:
        Dictionary of counts and percentages
    """
    n_total = len(table)
    padj = table["padj"]
    lfc = table["log2FoldChange"]

    significant = padj < alpha
    up = significant & (lfc > lfc_threshold)
    down = significant & (lfc < -lfc_threshold)
    outliers = table["pvalue"].isna() & (table["baseMean"] > 0)
    low_counts = padj.isna() & table["pvalue"].notna()

    def _pct(n: int) -> float:
        return round(100.0 * n / n_total, 2) if n_total else 0.0

    summary = {
        "n_genes": n_total,
        "alpha": alpha,
        "lfc_threshold": lfc_threshold,
        "n_significant": int((up | down).sum()),
        "n_up": int(up.sum()),
        "n_down": int(down.sum()),
        "pct_up": _pct(int(up.sum())),
        "pct_down": _pct(int(down.sum())),
        "n_outliers": int(outliers.sum()),
        "n_low_counts": int(low_counts.sum()),
    }

    if low_counts.any():
        tested_means = table.loc[padj.notna(), "baseMean"]
        summary["low_count_mean_cutoff"] = float(tested_means.min()) if len(tested_means) else float("nan")

    return summary


def check_padj_monotonic(table: pd.DataFrame) -> bool:
    """True if every defined adjusted p-value is at least its raw p-value."""
    defined = table[["pvalue", "padj"]].dropna()
    return bool(np.all(defined["padj"].to_numpy() >= defined["pvalue"].to_numpy() - 1e-12))


def export_results(
    table: pd.DataFrame,
    output_file: Union[str, Path],
    sep: str = ",",
) -> Path:
    """
    Write the full result table as delimited text.

    The file appears only once it is completely written. A missing or
    unwritable directory raises and leaves nothing behind.

    Args:
        table: Per-gene result table
        output_file: Destination path
        sep: Field delimiter

    Returns:
        Path of the written file
    """
    path = write_table_atomic(results_table(table), output_file, sep=sep, index=True)
    logger.info(f"Results for {len(table)} genes written to {path}")
    return path


def read_results(results_file: Union[str, Path]) -> pd.DataFrame:
    """Read an exported result table back into the standard schema."""
    path = Path(results_file)
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    return results_table(pd.read_csv(path, sep=sep))
