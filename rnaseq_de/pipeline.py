"""
End-to-end differential expression run.

This module chains the walkthrough steps: assemble the dataset, drop
low-count genes, fit the DESeq2 model, test the contrast, optionally shrink
fold changes, export the table, draw the plots and write a summary and an
HTML report.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from .config import AnalysisConfig
from .dataset import assemble_dataset
from .deseq import Contrast, fit_model, shrink_lfc, validate_contrast, wald_test
from .exceptions import SchemaError
from .report import ReportGenerator
from .results import check_padj_monotonic, export_results, summarize_results
from .utils import create_output_dirs, save_metrics_json, write_table_atomic
from .viz import create_visualizations

logger = logging.getLogger(__name__)


def run_analysis(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    output_dir: Path,
    config: Optional[AnalysisConfig] = None,
    make_plots: bool = True,
    make_report: bool = True,
) -> Dict[str, Any]:
    """
    Run the full differential expression analysis.

    Args:
        counts: Count matrix (genes x samples)
        metadata: Sample sheet, same samples in the same order as ``counts``
        output_dir: Output directory (created if missing)
        config: Analysis parameters; defaults when omitted
        make_plots: Draw the MA, volcano, heatmap, PCA and dispersion plots
        make_report: Render the HTML report

    Returns:
        Dictionary with the summary, output paths and the final DEResult
    """
    config = config or AnalysisConfig()
    output_dir = Path(output_dir)
    dirs = create_output_dirs(output_dir, ['tables', 'plots'])

    logger.info("Running differential expression analysis")

    dataset = assemble_dataset(counts, metadata, config.design)
    contrast = Contrast.from_sequence(config.contrast)
    validate_contrast(dataset, contrast, strict_two_level=config.strict_two_level)
    if config.color_by is not None and config.color_by not in dataset.metadata.columns:
        raise SchemaError(
            f"color_by column '{config.color_by}' not found in metadata columns {list(dataset.metadata.columns)}"
        )

    n_input_genes = dataset.n_genes
    dataset = dataset.filter(config.min_count)

    model = fit_model(dataset, n_cpus=config.n_cpus, refit_cooks=config.refit_cooks, contrast=contrast)
    result = wald_test(
        model,
        contrast,
        alpha=config.alpha,
        cooks_filter=config.cooks_filter,
        independent_filter=config.independent_filter,
        strict_two_level=config.strict_two_level,
    )

    outputs: Dict[str, Any] = {}

    if config.shrink:
        unshrunk_file = export_results(result.table, dirs['tables'] / 'deseq2_results_unshrunk.csv')
        outputs['results_unshrunk'] = str(unshrunk_file)
        result = shrink_lfc(result, coeff=config.shrink_coeff)

    if not check_padj_monotonic(result.table):
        logger.warning("Some adjusted p-values are smaller than their raw p-values")

    results_file = export_results(result.table, output_dir / 'deseq2_results.csv')
    outputs['results'] = str(results_file)

    normalized_file = write_table_atomic(model.normalized_counts, dirs['tables'] / 'normalized_counts.tsv', sep='\t')
    size_factor_file = write_table_atomic(model.size_factors.to_frame(), dirs['tables'] / 'size_factors.tsv', sep='\t')
    outputs['normalized_counts'] = str(normalized_file)
    outputs['size_factors'] = str(size_factor_file)

    summary = summarize_results(result.table, alpha=config.alpha, lfc_threshold=config.lfc_threshold)
    summary.update({
        'n_input_genes': n_input_genes,
        'n_filtered_genes': n_input_genes - dataset.n_genes,
        'n_samples': dataset.n_samples,
        'contrast': contrast.label,
        'shrunk': result.shrunk,
        'shrink_coeff': result.shrink_coeff,
    })

    if make_plots:
        plots = create_visualizations(
            result,
            dirs['plots'],
            alpha=config.alpha,
            lfc_threshold=config.lfc_threshold,
            top_n=config.top_n,
            color_by=config.color_by,
            plot_format=config.plot_format,
        )
        outputs['plots'] = {name: str(path) for name, path in plots.items()}

    metrics = {
        'summary': summary,
        'parameters': config.to_dict(),
        'outputs': outputs,
    }
    summary_file = output_dir / 'summary.json'
    save_metrics_json(metrics, summary_file)
    outputs['summary'] = str(summary_file)

    if make_report:
        report_file = output_dir / 'report.html'
        generator = ReportGenerator()
        context = generator.build_context(
            title=f'Differential Expression: {contrast.tested} vs {contrast.reference}',
            summary=summary,
            table=result.table,
            parameters=config.to_dict(),
            plots={name: Path(path) for name, path in outputs.get('plots', {}).items()},
            output_file=report_file,
            n_top=config.top_n,
        )
        generator.generate_report(context, report_file)
        outputs['report'] = str(report_file)

    logger.info(
        f"Analysis complete: {summary['n_significant']} of {summary['n_genes']} genes "
        f"significant at padj < {config.alpha}, |LFC| > {config.lfc_threshold}"
    )

    return {'summary': summary, 'outputs': outputs, 'result': result}
