"""
rnaseq_de - differential gene-expression analysis of RNA-seq count data.

Walks a count matrix and a sample sheet through filtering, DESeq2 model
fitting, contrast testing, fold-change shrinkage and reporting.
"""

__version__ = "1.0.0"

from .config import AnalysisConfig
from .dataset import AnalysisDataset, assemble_dataset, filter_counts
from .deseq import Contrast, DEResult, FittedModel, fit_model, shrink_lfc, wald_test
from .results import export_results, results_table, summarize_results

__all__ = [
    "__version__",
    "AnalysisConfig",
    "AnalysisDataset",
    "assemble_dataset",
    "filter_counts",
    "Contrast",
    "DEResult",
    "FittedModel",
    "fit_model",
    "wald_test",
    "shrink_lfc",
    "export_results",
    "results_table",
    "summarize_results",
]
