"""
Visualization module.

Plots over a differential expression result: MA plot, volcano plot,
clustered heatmap of the top genes, sample PCA and dispersion estimates.
Every plot function returns its figure; when ``output_file`` is given the
figure is saved and closed.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.stats import zscore
from sklearn.decomposition import PCA

from .exceptions import DegenerateDataError
from .results import significance_mask, top_genes
from .utils import validate_directory_exists

logger = logging.getLogger(__name__)

UP_COLOR = '#d62728'
DOWN_COLOR = '#1f77b4'
NS_COLOR = '#b0b0b0'


def _finish(fig, output_file: Optional[Path]):
    if output_file is not None:
        fig.savefig(output_file, dpi=300, bbox_inches='tight')
        plt.close(fig)
        logger.debug(f"Saved plot to {output_file}")
    return fig


def _significance_colors(table: pd.DataFrame, alpha: float, lfc_threshold: float) -> np.ndarray:
    sig = significance_mask(table, alpha, lfc_threshold).to_numpy()
    lfc = table['log2FoldChange'].to_numpy()
    colors = np.full(len(table), NS_COLOR, dtype=object)
    colors[sig & (lfc > 0)] = UP_COLOR
    colors[sig & (lfc < 0)] = DOWN_COLOR
    return colors


def plot_ma(
    table: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    title: str = 'MA Plot',
    output_file: Optional[Path] = None,
):
    """
    Plot mean normalized count against log2 fold change.

    Args:
        table: Per-gene result table
        alpha: Adjusted p-value cutoff used for coloring
        lfc_threshold: Fold change cutoff used for coloring
        title: Plot title
        output_file: Where to save the figure, if anywhere

    Returns:
        matplotlib Figure
    """
    data = table.dropna(subset=['baseMean', 'log2FoldChange'])
    data = data.loc[data['baseMean'] > 0]
    colors = _significance_colors(data, alpha, lfc_threshold)

    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(data['baseMean'], data['log2FoldChange'], c=colors, s=8, alpha=0.7, linewidths=0)
    ax.set_xscale('log')
    ax.axhline(0, color='black', linewidth=0.8)
    if lfc_threshold > 0:
        for y in (lfc_threshold, -lfc_threshold):
            ax.axhline(y, color='grey', linestyle='--', linewidth=0.8)
    ax.set_xlabel('Mean of Normalized Counts')
    ax.set_ylabel('log2 Fold Change')
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    return _finish(fig, output_file)


def plot_volcano(
    table: pd.DataFrame,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    title: str = 'Volcano Plot',
    label_top: int = 10,
    output_file: Optional[Path] = None,
):
    """
    Plot log2 fold change against -log10 adjusted p-value.

    Points are red (up) or blue (down) when ``padj < alpha`` and
    ``|log2FoldChange| > lfc_threshold``, grey otherwise. The ``label_top``
    most significant of those genes are annotated.
    """
    data = table.dropna(subset=['padj', 'log2FoldChange']).copy()
    # padj of exactly 0 would plot at infinity
    positive = data.loc[data['padj'] > 0, 'padj']
    floor = positive.min() if len(positive) else 1e-300
    data['neg_log10_padj'] = -np.log10(data['padj'].clip(lower=floor))
    colors = _significance_colors(data, alpha, lfc_threshold)

    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(data['log2FoldChange'], data['neg_log10_padj'], c=colors, s=10, alpha=0.7, linewidths=0)
    ax.axhline(-np.log10(alpha), color='grey', linestyle='--', linewidth=0.8)
    for x in (lfc_threshold, -lfc_threshold):
        ax.axvline(x, color='grey', linestyle='--', linewidth=0.8)

    n_up = int((colors == UP_COLOR).sum())
    n_down = int((colors == DOWN_COLOR).sum())
    stats_text = f'Up: {n_up}\nDown: {n_down}'
    ax.text(0.02, 0.97, stats_text, transform=ax.transAxes, va='top',
            bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    if label_top > 0:
        hits = data.loc[significance_mask(data, alpha, lfc_threshold)].nsmallest(label_top, 'padj')
        for gene, row in hits.iterrows():
            ax.annotate(str(gene), (row['log2FoldChange'], row['neg_log10_padj']),
                        fontsize=7, xytext=(3, 3), textcoords='offset points')

    ax.set_xlabel('log2 Fold Change')
    ax.set_ylabel('-log10 Adjusted p-value')
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    return _finish(fig, output_file)


def scale_rows(matrix: pd.DataFrame) -> pd.DataFrame:
    """Z-score each row; constant rows become zeros."""
    scaled = zscore(matrix.to_numpy(dtype=float), axis=1)
    scaled = np.nan_to_num(scaled, nan=0.0)
    return pd.DataFrame(scaled, index=matrix.index, columns=matrix.columns)


def plot_heatmap(
    table: pd.DataFrame,
    normalized_counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    n_genes: int = 20,
    annotate_by: Optional[str] = None,
    title: str = 'Top Differentially Expressed Genes',
    output_file: Optional[Path] = None,
):
    """
    Clustered heatmap of row-scaled log2 normalized counts for the top genes.

    Args:
        table: Per-gene result table
        normalized_counts: Normalized counts (genes x samples)
        metadata: Sample sheet used for the column color bar
        n_genes: Number of genes with the smallest padj to show
        annotate_by: Metadata column for the column color bar
        title: Plot title
        output_file: Where to save the figure, if anywhere

    Raises:
        DegenerateDataError: If no gene has a defined adjusted p-value
    """
    top = top_genes(table, n_genes)
    if top.empty:
        raise DegenerateDataError("No genes with an adjusted p-value to show in the heatmap")

    log_counts = np.log2(normalized_counts.loc[top.index] + 1)
    scaled = scale_rows(log_counts)

    col_colors = None
    if metadata is not None and annotate_by is not None:
        groups = metadata.loc[scaled.columns, annotate_by].astype(str)
        palette = dict(zip(sorted(groups.unique()), sns.color_palette('Set2', groups.nunique())))
        col_colors = groups.map(palette).rename(annotate_by)

    grid = sns.clustermap(
        scaled,
        cmap='RdBu_r',
        center=0,
        row_cluster=len(scaled) > 1,
        col_cluster=scaled.shape[1] > 1,
        col_colors=col_colors,
        yticklabels=True,
        figsize=(10, max(6, 0.3 * len(scaled) + 3)),
        cbar_kws={'label': 'Row z-score'},
    )
    grid.fig.suptitle(title, y=1.02)

    return _finish(grid.fig, output_file)


def plot_pca(
    normalized_counts: pd.DataFrame,
    metadata: pd.DataFrame,
    color_by: str,
    n_top_variable: int = 500,
    title: str = 'Sample PCA',
    output_file: Optional[Path] = None,
):
    """
    PCA of samples on log2 normalized counts of the most variable genes.

    Raises:
        DegenerateDataError: If fewer than two genes or samples are available
    """
    log_counts = np.log2(normalized_counts + 1)
    if log_counts.shape[0] < 2 or log_counts.shape[1] < 2:
        raise DegenerateDataError("PCA needs at least two genes and two samples")

    variances = log_counts.var(axis=1)
    selected = log_counts.loc[variances.sort_values(ascending=False).index[:n_top_variable]]

    pca = PCA(n_components=2)
    coords = pca.fit_transform(selected.T.to_numpy())
    explained = pca.explained_variance_ratio_ * 100

    pcs = pd.DataFrame(coords, columns=['PC1', 'PC2'], index=selected.columns)
    pcs[color_by] = metadata.loc[pcs.index, color_by].astype(str).to_numpy()

    fig, ax = plt.subplots(figsize=(7, 6))
    sns.scatterplot(data=pcs, x='PC1', y='PC2', hue=color_by, s=70, ax=ax)
    ax.set_xlabel(f'PC1 ({explained[0]:.1f}% variance)')
    ax.set_ylabel(f'PC2 ({explained[1]:.1f}% variance)')
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    return _finish(fig, output_file)


def plot_dispersions(
    dispersion_table: pd.DataFrame,
    title: str = 'Dispersion Estimates',
    output_file: Optional[Path] = None,
):
    """Gene-wise, fitted trend and final dispersions against mean normalized count."""
    data = dispersion_table.loc[dispersion_table['mean_normalized'] > 0]
    order = np.argsort(data['mean_normalized'].to_numpy())

    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(data['mean_normalized'], data['genewise'], s=6, color='black', alpha=0.5, label='gene-est')
    ax.scatter(data['mean_normalized'], data['final'], s=6, color='#1f77b4', alpha=0.6, label='final')
    ax.plot(data['mean_normalized'].to_numpy()[order], data['fitted'].to_numpy()[order],
            color='#d62728', linewidth=1.5, label='fitted')
    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('Mean of Normalized Counts')
    ax.set_ylabel('Dispersion')
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    return _finish(fig, output_file)


def create_visualizations(
    result: Any,
    output_dir: Path,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    top_n: int = 20,
    color_by: Optional[str] = None,
    plot_format: str = 'png',
) -> Dict[str, Path]:
    """
    Write all plots for a test result.

    Args:
        result: DEResult from ``rnaseq_de.deseq``
        output_dir: Directory for the plot files (created if missing)
        alpha: Adjusted p-value cutoff
        lfc_threshold: Fold change cutoff
        top_n: Genes in the heatmap
        color_by: Metadata column for PCA and heatmap annotation;
            defaults to the contrast factor
        plot_format: File extension for the plots

    Returns:
        Dictionary mapping plot name to file path
    """
    logger.info("Creating visualizations")
    output_dir = validate_directory_exists(output_dir, create=True)

    model = result.model
    metadata = model.dataset.metadata
    color_by = color_by or result.contrast.factor
    normalized = model.normalized_counts
    label = f'{result.contrast.tested} vs {result.contrast.reference}'
    suffix = ' (shrunken LFC)' if result.shrunk else ''

    plots = {
        'ma': output_dir / f'ma_plot.{plot_format}',
        'volcano': output_dir / f'volcano_plot.{plot_format}',
        'heatmap': output_dir / f'top_genes_heatmap.{plot_format}',
        'pca': output_dir / f'pca_plot.{plot_format}',
        'dispersion': output_dir / f'dispersion_plot.{plot_format}',
    }

    plot_ma(result.table, alpha, lfc_threshold, title=f'MA Plot: {label}{suffix}', output_file=plots['ma'])
    plot_volcano(result.table, alpha, lfc_threshold, title=f'Volcano Plot: {label}{suffix}',
                 output_file=plots['volcano'])
    plot_heatmap(result.table, normalized, metadata, n_genes=top_n, annotate_by=color_by,
                 title=f'Top {top_n} Genes: {label}', output_file=plots['heatmap'])
    plot_pca(normalized, metadata, color_by=color_by, output_file=plots['pca'])
    plot_dispersions(model.dispersion_table, output_file=plots['dispersion'])

    logger.info(f"Saved {len(plots)} plots to {output_dir}")
    return plots
