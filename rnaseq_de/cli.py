#!/usr/bin/env python3
"""
rnaseq_de CLI

Command-line interface for differential gene-expression analysis of RNA-seq
count data. Simulates or loads counts, validates inputs, filters low-count
genes, runs DESeq2 and writes tables, plots and an HTML report.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AnalysisConfig
from .data import align_metadata, load_reference_dataset, read_count_matrix, read_metadata, write_inputs
from .dataset import assemble_dataset, filter_counts
from .pipeline import run_analysis
from .report import generate_final_report
from .simulate import simulate_dataset
from .utils import format_number, setup_logging, write_table_atomic

app = typer.Typer(
    name="rnaseq_de",
    help="rnaseq_de - Differential expression analysis of RNA-seq count data",
    add_completion=False,
)

console = Console()


# Global options
def version_callback(value: bool):
    if value:
        console.print(f"rnaseq_de v{__version__}")
        raise typer.Exit()


def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """rnaseq_de CLI"""
    pass


def _parse_contrast(value: Optional[str]) -> Optional[Tuple[str, str, str]]:
    if value is None:
        return None
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 3 or not all(parts):
        raise typer.BadParameter("Contrast must be 'factor,tested_level,reference_level'")
    return tuple(parts)


def _load_inputs(
    counts: Optional[Path],
    metadata: Optional[Path],
    reference: bool,
    align: bool,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    if reference:
        return load_reference_dataset()

    if counts is None or metadata is None:
        raise typer.BadParameter("Provide COUNTS and METADATA files, or use --reference")

    counts_df = read_count_matrix(counts)
    metadata_df = read_metadata(metadata)
    if align:
        metadata_df = align_metadata(counts_df, metadata_df)
    return counts_df, metadata_df


@app.command()
def simulate(
    output_dir: Path = typer.Option("./simulated", help="Output directory"),
    n_genes: int = typer.Option(100, help="Number of genes"),
    n_samples: int = typer.Option(10, help="Number of samples"),
    seed: int = typer.Option(42, help="Random seed"),
    de_fraction: float = typer.Option(0.1, help="Fraction of genes with a treatment effect"),
    n_batches: int = typer.Option(1, help="Number of batches"),
):
    """Generate a synthetic count matrix and sample sheet."""
    console.print(f"[bold blue]Simulating {n_genes} genes x {n_samples} samples[/bold blue]")

    try:
        counts_df, metadata_df = simulate_dataset(
            n_genes=n_genes,
            n_samples=n_samples,
            seed=seed,
            de_fraction=de_fraction,
            n_batches=n_batches,
        )
        counts_file, metadata_file = write_inputs(counts_df, metadata_df, output_dir)
        console.print("[bold green]Simulation completed![/bold green]")
        console.print(f"Counts saved to: {counts_file}")
        console.print(f"Metadata saved to: {metadata_file}")

    except Exception as e:
        console.print(f"[bold red]Error in simulation: {e}[/bold red]")
        sys.exit(1)


@app.command()
def validate(
    counts: Path = typer.Argument(..., help="Count matrix (genes x samples)"),
    metadata: Path = typer.Argument(..., help="Sample metadata file"),
    design: str = typer.Option("~ condition", help="Design formula"),
    align: bool = typer.Option(False, help="Reorder metadata rows to match count columns"),
):
    """Check that counts, metadata and design formula fit together."""
    console.print("[bold blue]Validating inputs[/bold blue]")

    try:
        counts_df, metadata_df = _load_inputs(counts, metadata, reference=False, align=align)
        dataset = assemble_dataset(counts_df, metadata_df, design)

        table = Table(title="Input summary")
        table.add_column("Item")
        table.add_column("Value", justify="right")
        table.add_row("Genes", str(dataset.n_genes))
        table.add_row("Samples", str(dataset.n_samples))
        table.add_row("Total counts", format_number(float(dataset.counts.to_numpy().sum())))
        for covariate in dataset.covariates:
            table.add_row(f"Levels of {covariate}", ", ".join(dataset.levels(covariate)))
        console.print(table)
        console.print("[bold green]Inputs are valid![/bold green]")

    except Exception as e:
        console.print(f"[bold red]Input validation failed: {e}[/bold red]")
        sys.exit(1)


@app.command("filter")
def filter_command(
    counts: Path = typer.Argument(..., help="Count matrix (genes x samples)"),
    output_file: Path = typer.Option("filtered_counts.tsv", help="Filtered count matrix"),
    min_count: int = typer.Option(10, help="Minimum total count per gene"),
):
    """Drop genes whose total count is below a threshold."""
    console.print(f"[bold blue]Filtering genes with fewer than {min_count} reads[/bold blue]")

    try:
        counts_df = read_count_matrix(counts)
        filtered = filter_counts(counts_df, min_count)
        write_table_atomic(filtered, output_file, sep='\t')
        console.print(f"[bold green]Kept {len(filtered)} of {len(counts_df)} genes[/bold green]")
        console.print(f"Filtered counts saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error in filtering: {e}[/bold red]")
        sys.exit(1)


@app.command()
def run(
    counts: Optional[Path] = typer.Argument(None, help="Count matrix (genes x samples)"),
    metadata: Optional[Path] = typer.Argument(None, help="Sample metadata file"),
    output_dir: Path = typer.Option("./deseq2_results", help="Output directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
    reference: bool = typer.Option(False, help="Use the bundled reference dataset"),
    align: bool = typer.Option(False, help="Reorder metadata rows to match count columns"),
    design: Optional[str] = typer.Option(None, help="Design formula, e.g. '~ batch + condition'"),
    contrast: Optional[str] = typer.Option(None, help="Contrast as 'factor,tested,reference'"),
    min_count: Optional[int] = typer.Option(None, help="Minimum total count per gene"),
    alpha: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff"),
    lfc_threshold: Optional[float] = typer.Option(None, help="Absolute log2 fold change cutoff"),
    top_n: Optional[int] = typer.Option(None, help="Genes shown in the heatmap"),
    shrink: Optional[bool] = typer.Option(None, "--shrink/--no-shrink", help="Apply apeGLM LFC shrinkage"),
    strict_two_level: Optional[bool] = typer.Option(
        None, "--strict-two-level/--allow-multi-level",
        help="Reject contrasts on factors with more than two levels"
    ),
    n_cpus: Optional[int] = typer.Option(None, help="Worker processes for model fitting"),
    plots: bool = typer.Option(True, "--plots/--no-plots", help="Draw plots"),
    make_report: bool = typer.Option(True, "--report/--no-report", help="Write the HTML report"),
):
    """Run the full differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        config = AnalysisConfig.from_yaml(config_file) if config_file else AnalysisConfig()
        if reference and contrast is None and config_file is None:
            # the bundled dataset compares condition B against A
            config = config.update(contrast=("condition", "B", "A"))
        config = config.update(
            design=design,
            contrast=_parse_contrast(contrast),
            min_count=min_count,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            top_n=top_n,
            shrink=shrink,
            strict_two_level=strict_two_level,
            n_cpus=n_cpus,
        )

        counts_df, metadata_df = _load_inputs(counts, metadata, reference, align)
        results = run_analysis(
            counts_df,
            metadata_df,
            output_dir,
            config=config,
            make_plots=plots,
            make_report=make_report,
        )

        summary = results['summary']
        console.print("[bold green]Differential expression analysis completed![/bold green]")
        console.print(
            f"{summary['n_genes']} genes tested, {summary['n_up']} up, {summary['n_down']} down "
            f"(padj < {config.alpha}, |LFC| > {config.lfc_threshold})"
        )
        console.print(f"Results saved to: {output_dir}")

    except typer.BadParameter:
        raise
    except Exception as e:
        console.print(f"[bold red]Error in differential expression analysis: {e}[/bold red]")
        sys.exit(1)


@app.command()
def report(
    results_dir: Path = typer.Argument(..., help="Directory written by the run command"),
    output_file: Path = typer.Option("final_report.html", help="Output HTML report file"),
    title: str = typer.Option("Differential Expression Report", help="Report title"),
    top_n: int = typer.Option(20, help="Genes listed in the report"),
):
    """Generate an HTML report from a finished run."""
    console.print("[bold blue]Generating final report[/bold blue]")

    try:
        report_file = generate_final_report(
            results_dir=results_dir,
            output_file=output_file,
            title=title,
            n_top=top_n,
        )
        console.print("[bold green]Report generated successfully![/bold green]")
        console.print(f"Report saved to: {report_file}")

    except Exception as e:
        console.print(f"[bold red]Error generating report: {e}[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    app()
