"""
Reporting module.

Renders a single HTML page summarising a differential expression run:
parameters, summary counts, the most significant genes and links to plots.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import __version__
from .results import read_results, top_genes
from .utils import load_metrics_json, validate_directory_exists, validate_file_exists

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / 'templates'


class ReportGenerator:
    """Generate HTML reports for differential expression results."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        """
        Initialize report generator.

        Args:
            template_dir: Directory containing Jinja2 templates
        """
        self.template_dir = Path(template_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )
        self.env.filters['sig'] = self._sig_filter

    @staticmethod
    def _sig_filter(value: Any, digits: int = 3) -> str:
        """Format a number with ``digits`` significant figures."""
        try:
            value = float(value)
        except (ValueError, TypeError):
            return str(value)
        if pd.isna(value):
            return 'NA'
        return f'{value:.{digits}g}'

    def build_context(
        self,
        title: str,
        summary: Dict[str, Any],
        table: pd.DataFrame,
        parameters: Optional[Dict[str, Any]] = None,
        plots: Optional[Dict[str, Path]] = None,
        output_file: Optional[Path] = None,
        n_top: int = 20,
    ) -> Dict[str, Any]:
        """Collect everything the template needs."""
        rows: List[Dict[str, Any]] = []
        for gene, row in top_genes(table, n_top).iterrows():
            record = {'gene_id': gene}
            record.update(row.to_dict())
            rows.append(record)

        plot_entries = []
        base = Path(output_file).parent if output_file is not None else None
        for name, path in (plots or {}).items():
            path = Path(path)
            if base is not None:
                try:
                    path = path.resolve().relative_to(base.resolve())
                except ValueError:
                    pass
            plot_entries.append({'title': name.replace('_', ' ').title(), 'path': path.as_posix()})

        return {
            'title': title,
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            'version': __version__,
            'summary': summary,
            'parameters': parameters or {},
            'top_genes': rows,
            'plots': plot_entries,
        }

    def generate_report(
        self,
        context: Dict[str, Any],
        output_file: Path,
        template_name: str = 'report.html',
    ) -> Path:
        """
        Render the template to ``output_file``.

        Args:
            context: Template variables from build_context
            output_file: HTML file to write
            template_name: Name of Jinja2 template to use

        Returns:
            Path of the written report
        """
        template = self.env.get_template(template_name)
        html_content = template.render(**context)

        output_file = Path(output_file)
        with open(output_file, 'w', encoding='utf-8') as f:
            f.write(html_content)

        logger.info(f"Report written to {output_file}")
        return output_file


def generate_final_report(
    results_dir: Path,
    output_file: Path,
    title: str = "Differential Expression Report",
    n_top: int = 20,
) -> Path:
    """
    Build an HTML report from a finished run directory.

    Expects ``summary.json`` and the exported results table named in it
    (as written by ``rnaseq_de.pipeline.run_analysis``).
    """
    logger.info("Generating final report")
    results_dir = validate_directory_exists(results_dir)
    metrics = load_metrics_json(validate_file_exists(results_dir / 'summary.json'))

    outputs = metrics.get('outputs', {})
    results_file = Path(outputs.get('results', results_dir / 'deseq2_results.csv'))
    if not results_file.is_absolute() and not results_file.exists():
        results_file = results_dir / results_file.name
    table = read_results(validate_file_exists(results_file))

    plots = {name: Path(path) for name, path in outputs.get('plots', {}).items()}

    generator = ReportGenerator()
    context = generator.build_context(
        title=title,
        summary=metrics.get('summary', {}),
        table=table,
        parameters=metrics.get('parameters', {}),
        plots=plots,
        output_file=output_file,
        n_top=n_top,
    )
    return generator.generate_report(context, output_file)
