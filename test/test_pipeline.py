#!/usr/bin/env python3
"""
rnaseq_de - Test Suite

pytest test suite covering ingestion, filtering, model fitting, result
handling, plotting, reporting and the command-line interface.
"""

import json
import logging
import stat
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import matplotlib
matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

# Add the project root to the Python path
import sys
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

try:
    from rnaseq_de import cli, config, data, dataset, deseq, pipeline, report, results, simulate, utils, viz
    from rnaseq_de.exceptions import DegenerateDataError, SchemaError, ShapeError
    from test.generate_test_data import create_config, create_featurecounts_files, create_sample_data
except ImportError as e:
    pytest.skip(f"Could not import project modules: {e}", allow_module_level=True)


CONTRAST = ['condition', 'Treatment', 'Control']


@pytest.fixture(scope='module')
def simulated():
    """100 genes x 10 samples, Control vs Treatment."""
    return simulate.simulate_dataset(n_genes=100, n_samples=10, seed=42)


@pytest.fixture(scope='module')
def fitted_model(simulated):
    counts, metadata = simulated
    ds = dataset.assemble_dataset(counts, metadata, '~ condition').filter(10)
    return deseq.fit_model(ds)


@pytest.fixture(scope='module')
def wald_result(fitted_model):
    return deseq.wald_test(fitted_model, CONTRAST)


@pytest.fixture
def result_table():
    """Hand-written result table with one Cook's outlier (gE)."""
    return pd.DataFrame(
        {
            'baseMean': [100.0, 50.0, 10.0, 5.0, 0.5, 200.0],
            'log2FoldChange': [2.5, -1.8, 0.3, 1.5, 0.1, -3.0],
            'lfcSE': [0.3, 0.3, 0.3, 0.3, 0.3, 0.3],
            'statistic': [8.3, -6.0, 1.0, 2.0, 0.2, -9.0],
            'pvalue': [1e-10, 1e-6, 0.3, 0.01, np.nan, 1e-12],
            'padj': [1e-9, 5e-6, 0.4, 0.03, np.nan, 6e-12],
        },
        index=pd.Index(['gA', 'gB', 'gC', 'gD', 'gE', 'gF'], name='gene_id'),
    )


class TestUtils:
    """Test utility functions."""

    def test_validate_file_exists(self, tmp_path):
        """Test file validation function."""
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        assert utils.validate_file_exists(test_file) == test_file

        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path / "nonexistent.txt")

    def test_validate_directory_exists(self, tmp_path):
        """Test directory validation with and without creation."""
        missing = tmp_path / "a" / "b"

        with pytest.raises(FileNotFoundError):
            utils.validate_directory_exists(missing)

        assert utils.validate_directory_exists(missing, create=True) == missing
        assert missing.is_dir()

    def test_metrics_json_handles_numpy(self, tmp_path):
        """Test that numpy scalars survive the JSON round trip."""
        metrics_file = tmp_path / "metrics.json"
        utils.save_metrics_json({'n': np.int64(3), 'x': np.float64(0.5), 'path': tmp_path}, metrics_file)

        loaded = utils.load_metrics_json(metrics_file)
        assert loaded == {'n': 3, 'x': 0.5, 'path': str(tmp_path)}

    def test_write_table_atomic_missing_directory(self, tmp_path):
        """Test that a missing directory raises and leaves nothing behind."""
        df = pd.DataFrame({'a': [1, 2]})
        target = tmp_path / "missing" / "table.csv"

        with pytest.raises(FileNotFoundError):
            utils.write_table_atomic(df, target)

        assert not target.exists()
        assert list(tmp_path.iterdir()) == []

    def test_write_table_atomic_no_temp_files(self, tmp_path):
        """Test that only the destination file remains after a write."""
        df = pd.DataFrame({'a': [1, 2]})
        target = utils.write_table_atomic(df, tmp_path / "table.csv", index=False)

        assert [p.name for p in tmp_path.iterdir()] == ["table.csv"]
        assert target.read_text().splitlines() == ["a", "1", "2"]

    def test_write_table_atomic_file_mode(self, tmp_path):
        """Test that tables get the same permissions as a plain write."""
        df = pd.DataFrame({'a': [1, 2]})
        df.to_csv(tmp_path / "plain.csv")
        utils.write_table_atomic(df, tmp_path / "atomic.csv")

        plain_mode = stat.S_IMODE((tmp_path / "plain.csv").stat().st_mode)
        atomic_mode = stat.S_IMODE((tmp_path / "atomic.csv").stat().st_mode)
        assert atomic_mode == plain_mode

    def test_setup_logging(self):
        """Test logging setup."""
        from rich.logging import RichHandler

        utils.setup_logging(level=logging.DEBUG)
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        assert any(isinstance(h, RichHandler) for h in root.handlers)
        assert logging.getLogger("numba").level == logging.WARNING

        utils.setup_logging(level=logging.INFO)

    def test_format_number(self):
        assert utils.format_number(1500) == "1.50K"
        assert utils.format_number(2_500_000, precision=1) == "2.5M"
        assert utils.format_number(12) == "12.00"


class TestConfig:
    """Test analysis configuration."""

    def test_defaults(self):
        cfg = config.AnalysisConfig()

        assert cfg.design == "~ condition"
        assert cfg.contrast == ("condition", "Treatment", "Control")
        assert cfg.min_count == 10
        assert cfg.alpha == 0.05
        assert cfg.lfc_threshold == 1.0
        assert cfg.factor == "condition"

    def test_from_yaml(self, tmp_path):
        config_file = create_config(tmp_path, min_count=5, contrast=['group', 'Y', 'X'])
        cfg = config.AnalysisConfig.from_yaml(config_file)

        assert cfg.min_count == 5
        assert cfg.contrast == ('group', 'Y', 'X')
        assert cfg.shrink is True

    def test_yaml_round_trip(self, tmp_path):
        cfg = config.AnalysisConfig(alpha=0.1, strict_two_level=True)
        loaded = config.AnalysisConfig.from_yaml(cfg.to_yaml(tmp_path / "cfg.yaml"))

        assert loaded == cfg

    def test_update_skips_none(self):
        cfg = config.AnalysisConfig().update(alpha=None, min_count=3)

        assert cfg.alpha == 0.05
        assert cfg.min_count == 3

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            config.AnalysisConfig(alpha=1.5)
        with pytest.raises(ValueError):
            config.AnalysisConfig(contrast=('condition', 'Treatment'))
        with pytest.raises(ValueError):
            config.AnalysisConfig(plot_format='bmp')
        with pytest.raises(ValueError):
            config.AnalysisConfig().update(not_a_key=1)

    def test_yaml_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            config.AnalysisConfig.from_yaml(config_file)


class TestSimulate:
    """Test synthetic count generation."""

    def test_shapes_and_identifiers(self, simulated):
        counts, metadata = simulated

        assert counts.shape == (100, 10)
        assert list(counts.columns) == list(metadata.index)
        assert counts.index.is_unique
        assert counts.index[0] == 'gene_0001'

    def test_counts_are_non_negative_integers(self, simulated):
        counts, _ = simulated

        assert np.issubdtype(counts.to_numpy().dtype, np.integer)
        assert (counts.to_numpy() >= 0).all()

    def test_conditions_balanced(self, simulated):
        _, metadata = simulated

        assert metadata['condition'].value_counts().to_dict() == {'Control': 5, 'Treatment': 5}

    def test_reproducible(self):
        first, _ = simulate.simulate_dataset(n_genes=20, n_samples=4, seed=7)
        second, _ = simulate.simulate_dataset(n_genes=20, n_samples=4, seed=7)

        pd.testing.assert_frame_equal(first, second)

    def test_batches(self):
        _, metadata = simulate.simulate_dataset(n_genes=10, n_samples=8, n_batches=2)

        assert sorted(metadata['batch'].unique()) == ['batch1', 'batch2']

    def test_true_effects(self):
        simulator = simulate.CountSimulator(n_genes=50, n_samples=6, de_fraction=0.2, log2_effect=3.0)
        _, true_lfc = simulator.generate_counts()

        assert (true_lfc != 0).sum() == 10
        assert set(np.abs(true_lfc[true_lfc != 0])) == {3.0}

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            simulate.CountSimulator(n_samples=1)
        with pytest.raises(ValueError):
            simulate.CountSimulator(dispersion=0)


class TestData:
    """Test ingestion and input validation."""

    def test_read_tables(self, tmp_path):
        counts_file, metadata_file = create_sample_data(tmp_path, n_genes=30, n_samples=6)

        counts = data.read_count_matrix(counts_file)
        metadata = data.read_metadata(metadata_file)

        assert counts.shape == (30, 6)
        assert counts.index.name == 'gene_id'
        assert list(metadata.columns) == ['condition']
        data.validate_sample_alignment(counts, metadata)

    def test_read_csv_counts(self, tmp_path):
        counts_file = tmp_path / "counts.csv"
        counts_file.write_text("gene_id,s1,s2\ng1,1,2\ng2,0,5\n")

        counts = data.read_count_matrix(counts_file)
        assert counts.loc['g2', 's2'] == 5

    def test_negative_counts_rejected(self):
        counts = pd.DataFrame({'s1': [1, -1], 's2': [3, 4]}, index=['g1', 'g2'])

        with pytest.raises(ShapeError, match="negative"):
            data.validate_count_matrix(counts)

    def test_fractional_counts_rejected(self):
        counts = pd.DataFrame({'s1': [1.5, 2.0], 's2': [3.0, 4.0]}, index=['g1', 'g2'])

        with pytest.raises(ShapeError, match="non-integer"):
            data.validate_count_matrix(counts)

    def test_missing_counts_rejected(self):
        counts = pd.DataFrame({'s1': [1.0, np.nan], 's2': [3.0, 4.0]}, index=['g1', 'g2'])

        with pytest.raises(ShapeError, match="missing"):
            data.validate_count_matrix(counts)

    def test_duplicate_genes_rejected(self):
        counts = pd.DataFrame({'s1': [1, 2], 's2': [3, 4]}, index=['g1', 'g1'])

        with pytest.raises(ShapeError, match="Duplicate"):
            data.validate_count_matrix(counts)

    def test_whole_float_counts_accepted(self):
        counts = pd.DataFrame({'s1': [1.0, 2.0], 's2': [3.0, 4.0]}, index=['g1', 'g2'])

        validated = data.validate_count_matrix(counts)
        assert np.issubdtype(validated.to_numpy().dtype, np.integer)

    def test_sample_set_mismatch(self, simulated):
        counts, metadata = simulated

        with pytest.raises(ShapeError, match="differ"):
            data.validate_sample_alignment(counts, metadata.iloc[:-1])

    def test_sample_order_mismatch(self, simulated):
        counts, metadata = simulated
        shuffled = metadata.iloc[::-1]

        with pytest.raises(ShapeError, match="order"):
            data.validate_sample_alignment(counts, shuffled)

        aligned = data.align_metadata(counts, shuffled)
        assert list(aligned.index) == list(counts.columns)
        data.validate_sample_alignment(counts, aligned)

    def test_align_metadata_rejects_different_sets(self, simulated):
        counts, metadata = simulated

        with pytest.raises(ShapeError):
            data.align_metadata(counts, metadata.iloc[1:])

    def test_merge_count_files(self, tmp_path, simulated):
        counts, _ = simulated
        subset = counts.iloc[:15, :3]
        files = create_featurecounts_files(tmp_path / "fc", subset)

        merged = data.merge_count_files(files, tmp_path / "merged.tsv")

        assert list(merged.columns) == list(subset.columns)
        pd.testing.assert_frame_equal(merged.loc[subset.index], subset, check_names=False)
        assert (tmp_path / "merged.tsv").exists()

    def test_load_reference_dataset(self):
        raw = pd.DataFrame(
            [[10, 0, 3], [12, 1, 4]],
            index=['sample1', 'sample2'],
            columns=['gene1', 'gene2', 'gene3'],
        )
        meta = pd.DataFrame({'condition': ['A', 'B'], 'group': ['X', 'Y']}, index=['sample1', 'sample2'])

        def fake_loader(modality="raw_counts", dataset="synthetic", debug=False):
            return raw.copy() if modality == "raw_counts" else meta.copy()

        with patch('pydeseq2.utils.load_example_data', side_effect=fake_loader):
            counts, metadata = data.load_reference_dataset()

        assert counts.shape == (3, 2)
        assert list(counts.columns) == list(metadata.index)
        assert counts.loc['gene3', 'sample2'] == 4

    def test_write_inputs(self, tmp_path, simulated):
        counts, metadata = simulated
        counts_file, metadata_file = data.write_inputs(counts, metadata, tmp_path / "inputs")

        pd.testing.assert_frame_equal(data.read_count_matrix(counts_file), counts, check_names=False)
        assert list(data.read_metadata(metadata_file).index) == list(metadata.index)


class TestDataset:
    """Test dataset assembly and filtering."""

    @pytest.mark.parametrize("design, expected", [
        ("~ condition", ["condition"]),
        ("~batch + condition", ["batch", "condition"]),
        ("~ condition:batch + condition", ["condition", "batch"]),
        ("~ C(condition)", ["condition"]),
        ('~ C(condition, contr.treatment("Control"))', ["condition"]),
        ("~ C(condition, Treatment(reference='Control')) + batch", ["condition", "batch"]),
        ("~ condition + scale(depth, ddof=1)", ["condition", "depth"]),
    ])
    def test_design_covariates(self, design, expected):
        assert dataset.design_covariates(design) == expected

    def test_design_without_tilde(self):
        with pytest.raises(SchemaError):
            dataset.design_covariates("condition")

    def test_assemble(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")

        assert ds.n_genes == 100
        assert ds.n_samples == 10
        assert ds.covariates == ["condition"]
        assert set(ds.levels("condition")) == {"Control", "Treatment"}

    def test_undefined_covariate(self, simulated):
        counts, metadata = simulated

        with pytest.raises(SchemaError, match="batch"):
            dataset.assemble_dataset(counts, metadata, "~ batch + condition")

    def test_single_level_factor(self, simulated):
        counts, metadata = simulated
        metadata = metadata.assign(condition="Control")

        with pytest.raises(DegenerateDataError):
            dataset.assemble_dataset(counts, metadata, "~ condition")

    def test_mismatched_samples(self, simulated):
        counts, metadata = simulated

        with pytest.raises(ShapeError):
            dataset.assemble_dataset(counts.iloc[:, :-1], metadata, "~ condition")

    def test_filter_threshold(self, simulated):
        counts, _ = simulated
        filtered = dataset.filter_counts(counts, 10)

        assert len(filtered) <= 100
        assert (filtered.sum(axis=1) >= 10).all()
        assert list(filtered.columns) == list(counts.columns)
        assert len(filtered) == int((counts.sum(axis=1) >= 10).sum())

    def test_filter_idempotent(self, simulated):
        counts, _ = simulated
        once = dataset.filter_counts(counts, 10)
        twice = dataset.filter_counts(once, 10)

        pd.testing.assert_frame_equal(once, twice)

    def test_filter_everything(self, simulated):
        counts, _ = simulated
        filtered = dataset.filter_counts(counts, 10**12)

        assert filtered.shape == (0, 10)

    def test_filter_returns_new_dataset(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")
        filtered = ds.filter(10**12)

        assert filtered is not ds
        assert ds.n_genes == 100
        assert filtered.n_genes == 0
        assert filtered.metadata is ds.metadata

    def test_dataset_is_frozen(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")

        with pytest.raises(AttributeError):
            ds.design = "~ batch"


class TestContrast:
    """Test contrast handling that does not need a fitted model."""

    def test_from_sequence(self):
        contrast = deseq.Contrast.from_sequence(CONTRAST)

        assert contrast.as_list() == CONTRAST
        assert contrast.label == "condition_Treatment_vs_Control"

    def test_wrong_length(self):
        with pytest.raises(SchemaError):
            deseq.Contrast.from_sequence(['condition', 'Treatment'])

    def test_unknown_level(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")

        with pytest.raises(SchemaError, match="Drug"):
            deseq.validate_contrast(ds, deseq.Contrast('condition', 'Drug', 'Control'))

    def test_factor_not_in_design(self, simulated):
        counts, metadata = simulated
        metadata = metadata.assign(batch=['b1', 'b2'] * 5)
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")

        with pytest.raises(SchemaError, match="not part of design"):
            deseq.validate_contrast(ds, deseq.Contrast('batch', 'b2', 'b1'))

    def test_same_levels(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")

        with pytest.raises(SchemaError):
            deseq.validate_contrast(ds, deseq.Contrast('condition', 'Control', 'Control'))

    def test_multi_level_factor(self, simulated):
        counts, metadata = simulated
        metadata = metadata.assign(condition=['Control'] * 4 + ['Treatment'] * 3 + ['Other'] * 3)
        ds = dataset.assemble_dataset(counts, metadata, "~ condition")
        contrast = deseq.Contrast.from_sequence(CONTRAST)

        deseq.validate_contrast(ds, contrast)

        with pytest.raises(SchemaError, match="strict_two_level"):
            deseq.validate_contrast(ds, contrast, strict_two_level=True)

    def test_fit_without_genes(self, simulated):
        counts, metadata = simulated
        ds = dataset.assemble_dataset(counts, metadata, "~ condition").filter(10**12)

        with pytest.raises(DegenerateDataError):
            deseq.fit_model(ds)


class TestDeseq:
    """Test model fitting, Wald tests and shrinkage with pydeseq2."""

    def test_model_outputs(self, fitted_model):
        n_genes = fitted_model.dataset.n_genes

        assert len(fitted_model.size_factors) == 10
        assert (fitted_model.size_factors > 0).all()
        assert fitted_model.normalized_counts.shape == (n_genes, 10)
        assert list(fitted_model.normalized_counts.index) == fitted_model.dataset.gene_ids
        assert fitted_model.dispersion_table.shape[0] == n_genes

    def test_result_schema(self, wald_result):
        assert list(wald_result.table.columns) == results.RESULT_COLUMNS
        assert wald_result.table.index.name == 'gene_id'
        assert wald_result.shrunk is False

    def test_one_row_per_gene(self, fitted_model, wald_result):
        assert list(wald_result.table.index) == fitted_model.dataset.gene_ids
        assert wald_result.table['log2FoldChange'].notna().all()
        assert wald_result.table['pvalue'].notna().sum() > 0

    def test_padj_not_below_pvalue(self, wald_result):
        table = wald_result.table.dropna(subset=['pvalue', 'padj'])

        assert len(table) > 0
        assert (table['padj'] >= table['pvalue'] - 1e-12).all()
        assert results.check_padj_monotonic(wald_result.table)

    def test_detects_simulated_effect(self, wald_result):
        assert (wald_result.table['padj'] < 0.05).sum() > 0

    def test_bad_contrast_level(self, fitted_model):
        with pytest.raises(SchemaError):
            deseq.wald_test(fitted_model, ['condition', 'Treatment', 'Placebo'])

    def test_resolve_coefficient(self, fitted_model):
        coeff = deseq.resolve_coefficient(fitted_model, deseq.Contrast.from_sequence(CONTRAST))

        assert coeff in fitted_model.coefficients
        assert 'Treatment' in coeff

        with pytest.raises(SchemaError):
            deseq.resolve_coefficient(fitted_model, deseq.Contrast.from_sequence(CONTRAST), coeff='nope')

    def test_shrinkage(self, wald_result):
        before = wald_result.table.copy()
        shrunk = deseq.shrink_lfc(wald_result)

        assert shrunk.shrunk is True
        assert list(shrunk.table.index) == list(before.index)
        assert len(shrunk.table) == len(before)
        assert not np.allclose(shrunk.table['log2FoldChange'], before['log2FoldChange'])
        pd.testing.assert_series_equal(shrunk.table['pvalue'], before['pvalue'])

        # the unshrunk result is untouched
        pd.testing.assert_frame_equal(wald_result.table, before)
        assert wald_result.shrunk is False

    def test_shrinkage_needs_reference_coefficient(self, fitted_model):
        reversed_result = deseq.wald_test(fitted_model, ['condition', 'Control', 'Treatment'])

        with pytest.raises(SchemaError):
            deseq.shrink_lfc(reversed_result)

    def test_shrinkage_with_reference_sorting_last(self, simulated):
        """The reference level becomes the base level even when it sorts after the tested one."""
        counts, metadata = simulated
        metadata = metadata.assign(condition=metadata['condition'].map({'Control': 'ctl', 'Treatment': 'Ab'}))
        ds = dataset.assemble_dataset(counts, metadata, '~ condition').filter(10)

        result = deseq.run_deseq(ds, ['condition', 'Ab', 'ctl'], shrink=True)

        assert result.shrunk is True
        assert result.shrink_coeff == 'condition[T.Ab]'
        assert 'condition[T.Ab]' in result.model.coefficients
        assert list(result.table.index) == ds.gene_ids
        # the dataset keeps its plain string levels
        assert not isinstance(ds.metadata['condition'].dtype, pd.CategoricalDtype)

    def test_reversed_contrast_shrinks_after_refit(self, fitted_model, wald_result):
        model = deseq.fit_model(fitted_model.dataset, contrast=['condition', 'Control', 'Treatment'])
        result = deseq.shrink_lfc(deseq.wald_test(model, ['condition', 'Control', 'Treatment']))

        assert result.shrink_coeff == 'condition[T.Control]'
        # flipping the contrast flips the direction of every significant gene
        unshrunk = deseq.wald_test(model, ['condition', 'Control', 'Treatment']).table
        significant = wald_result.table.index[wald_result.table['padj'] < 0.05]
        assert len(significant) > 0
        assert (
            np.sign(unshrunk.loc[significant, 'log2FoldChange'])
            == -np.sign(wald_result.table.loc[significant, 'log2FoldChange'])
        ).all()

    def test_relevel_metadata(self):
        metadata = pd.DataFrame({'condition': ['b', 'a', 'c', 'a'], 'depth': [1.0, 2.0, 3.0, 4.0]})

        releveled = deseq.relevel_metadata(metadata, deseq.Contrast('condition', 'a', 'c'))
        assert list(releveled['condition'].cat.categories) == ['c', 'b', 'a']
        assert list(releveled['condition'].astype(str)) == ['b', 'a', 'c', 'a']
        assert not isinstance(metadata['condition'].dtype, pd.CategoricalDtype)

        untouched = deseq.relevel_metadata(metadata, deseq.Contrast('depth', '1.0', '2.0'))
        pd.testing.assert_frame_equal(untouched, metadata)

    def test_dispersion_table_reads_gene_columns(self):
        """Per-gene dispersions live in ``var``; ``varm`` only holds the coefficients."""
        genes = pd.Index(['g1', 'g2', 'g3'])
        samples = pd.Index(['s1', 's2'])
        dds = SimpleNamespace(
            var=pd.DataFrame(
                {
                    'genewise_dispersions': [0.1, 0.2, 0.3],
                    'fitted_dispersions': [0.15, 0.2, 0.25],
                    'dispersions': [0.12, 0.2, 0.28],
                },
                index=genes,
            ),
            varm={'LFC': pd.DataFrame({'Intercept': [1.0, 2.0, 3.0]}, index=genes)},
            layers={'normed_counts': np.array([[2.0, 4.0, 6.0], [4.0, 8.0, 10.0]])},
            obs=pd.DataFrame({'condition': ['A', 'B']}, index=samples),
            var_names=genes,
            obs_names=samples,
        )
        model = deseq.FittedModel(dataset=None, dds=dds)

        table = model.dispersion_table
        assert list(table.columns) == ['mean_normalized', 'genewise', 'fitted', 'final']
        assert list(table['final']) == [0.12, 0.2, 0.28]
        assert list(table['mean_normalized']) == [3.0, 6.0, 8.0]

    def test_dispersion_table_matches_fitted_model(self, fitted_model):
        table = fitted_model.dispersion_table

        assert list(table.index) == fitted_model.dataset.gene_ids
        assert np.allclose(table['final'], np.asarray(fitted_model.dds.var['dispersions']))
        assert (table['genewise'].dropna() > 0).all()

    def test_model_not_mutated_by_test(self, fitted_model, wald_result):
        assert 'LFC' in fitted_model.dds.varm
        assert fitted_model.dataset.counts.shape[1] == 10


class TestResults:
    """Test result extraction and export."""

    def test_results_table_renames_stat(self, result_table):
        raw = result_table.rename(columns={'statistic': 'stat'})
        raw.index.name = None

        table = results.results_table(raw)
        assert list(table.columns) == results.RESULT_COLUMNS
        assert table.index.name == 'gene_id'

    def test_results_table_missing_column(self, result_table):
        with pytest.raises(SchemaError):
            results.results_table(result_table.drop(columns=['padj']))

    def test_significance_mask(self, result_table):
        mask = results.significance_mask(result_table, alpha=0.05, lfc_threshold=1.0)

        assert list(result_table.index[mask]) == ['gA', 'gB', 'gD', 'gF']

    def test_significant_genes_sorted(self, result_table):
        hits = results.significant_genes(result_table)

        assert list(hits.index) == ['gF', 'gA', 'gB', 'gD']

    def test_top_genes(self, result_table):
        assert list(results.top_genes(result_table, 3).index) == ['gF', 'gA', 'gB']

        with pytest.raises(ValueError):
            results.top_genes(result_table, 0)

    def test_summarize(self, result_table):
        summary = results.summarize_results(result_table, alpha=0.05)

        assert summary['n_genes'] == 6
        assert summary['n_up'] == 2
        assert summary['n_down'] == 2
        assert summary['n_significant'] == 4
        assert summary['n_outliers'] == 1
        assert summary['n_low_counts'] == 0

    def test_summarize_low_counts(self, result_table):
        table = result_table.copy()
        table.loc['gC', 'padj'] = np.nan

        summary = results.summarize_results(table)
        assert summary['n_low_counts'] == 1
        assert summary['low_count_mean_cutoff'] == 5.0

    def test_export(self, tmp_path, result_table):
        output_file = results.export_results(result_table, tmp_path / "results.csv")

        exported = pd.read_csv(output_file)
        assert list(exported.columns) == ['gene_id'] + results.RESULT_COLUMNS
        assert len(exported) == 6

        pd.testing.assert_frame_equal(results.read_results(output_file), result_table)

    def test_export_to_missing_directory(self, tmp_path, result_table):
        target = tmp_path / "does_not_exist" / "results.csv"

        with pytest.raises(OSError):
            results.export_results(result_table, target)

        assert not target.exists()
        assert not target.parent.exists()


class TestViz:
    """Test plotting functions."""

    def test_ma_and_volcano(self, tmp_path, result_table):
        viz.plot_ma(result_table, output_file=tmp_path / "ma.png")
        viz.plot_volcano(result_table, output_file=tmp_path / "volcano.png")

        assert (tmp_path / "ma.png").stat().st_size > 0
        assert (tmp_path / "volcano.png").stat().st_size > 0

    def test_plot_without_file_returns_figure(self, result_table):
        fig = viz.plot_ma(result_table)

        assert fig.axes[0].get_xlabel() == 'Mean of Normalized Counts'
        plt.close(fig)

    def test_scale_rows(self):
        matrix = pd.DataFrame([[1.0, 2.0, 3.0], [5.0, 5.0, 5.0]], index=['g1', 'g2'])
        scaled = viz.scale_rows(matrix)

        assert np.allclose(scaled.loc['g1'].mean(), 0)
        assert (scaled.loc['g2'] == 0).all()

    def test_heatmap(self, tmp_path, result_table):
        rng = np.random.default_rng(0)
        normalized = pd.DataFrame(
            rng.integers(1, 500, size=(6, 4)),
            index=result_table.index,
            columns=['s1', 's2', 's3', 's4'],
        ).astype(float)
        metadata = pd.DataFrame({'condition': ['A', 'A', 'B', 'B']}, index=normalized.columns)

        viz.plot_heatmap(result_table, normalized, metadata, n_genes=4, annotate_by='condition',
                         output_file=tmp_path / "heatmap.png")
        assert (tmp_path / "heatmap.png").exists()

    def test_heatmap_without_padj(self, result_table):
        table = result_table.assign(padj=np.nan)

        with pytest.raises(DegenerateDataError):
            viz.plot_heatmap(table, pd.DataFrame(index=table.index))

    def test_create_visualizations(self, tmp_path, wald_result):
        plots = viz.create_visualizations(wald_result, tmp_path / "plots", top_n=10)

        assert set(plots) == {'ma', 'volcano', 'heatmap', 'pca', 'dispersion'}
        for path in plots.values():
            assert path.exists()


class TestReport:
    """Test HTML report rendering."""

    def test_render(self, tmp_path, result_table):
        generator = report.ReportGenerator()
        context = generator.build_context(
            title="Test Report",
            summary=results.summarize_results(result_table),
            table=result_table,
            parameters={'alpha': 0.05},
            plots={'ma': tmp_path / "plots" / "ma.png"},
            output_file=tmp_path / "report.html",
            n_top=3,
        )
        output_file = generator.generate_report(context, tmp_path / "report.html")

        html = output_file.read_text()
        assert "Test Report" in html
        assert "gF" in html
        assert "gC" not in html
        assert 'src="plots/ma.png"' in html

    def test_sig_filter(self):
        assert report.ReportGenerator._sig_filter(0.000123456) == '0.000123'
        assert report.ReportGenerator._sig_filter(float('nan')) == 'NA'


@pytest.mark.slow
class TestPipeline:
    """End-to-end runs."""

    def test_run_analysis(self, tmp_path, simulated):
        counts, metadata = simulated
        output_dir = tmp_path / "run"

        outcome = pipeline.run_analysis(counts, metadata, output_dir, config=config.AnalysisConfig(top_n=10))

        assert (output_dir / "deseq2_results.csv").exists()
        assert (output_dir / "tables" / "deseq2_results_unshrunk.csv").exists()
        assert (output_dir / "tables" / "normalized_counts.tsv").exists()
        assert (output_dir / "plots" / "volcano_plot.png").exists()
        assert (output_dir / "report.html").exists()

        summary = json.loads((output_dir / "summary.json").read_text())
        assert summary['summary']['n_samples'] == 10
        assert summary['summary']['shrunk'] is True
        assert summary['parameters']['contrast'] == CONTRAST

        exported = results.read_results(output_dir / "deseq2_results.csv")
        assert len(exported) == outcome['result'].n_tested

        final = report.generate_final_report(output_dir, tmp_path / "final.html")
        assert "Differential Expression Report" in final.read_text()

    def test_run_analysis_rejects_bad_contrast_before_fitting(self, tmp_path, simulated):
        counts, metadata = simulated
        cfg = config.AnalysisConfig(contrast=('condition', 'Treatment', 'Placebo'))

        with patch('rnaseq_de.pipeline.fit_model') as mock_fit:
            with pytest.raises(SchemaError):
                pipeline.run_analysis(counts, metadata, tmp_path / "run", config=cfg)
            mock_fit.assert_not_called()

    def test_run_analysis_rejects_unknown_color_by_before_fitting(self, tmp_path, simulated):
        counts, metadata = simulated
        cfg = config.AnalysisConfig(color_by='tissue')

        with patch('rnaseq_de.pipeline.fit_model') as mock_fit:
            with pytest.raises(SchemaError, match="tissue"):
                pipeline.run_analysis(counts, metadata, tmp_path / "run", config=cfg)
            mock_fit.assert_not_called()

    def test_run_analysis_reversed_contrast_with_shrinkage(self, tmp_path, simulated):
        counts, metadata = simulated
        cfg = config.AnalysisConfig(contrast=('condition', 'Control', 'Treatment'))

        outcome = pipeline.run_analysis(counts, metadata, tmp_path / "run", config=cfg, make_plots=False)

        assert outcome['summary']['shrunk'] is True
        assert outcome['summary']['shrink_coeff'] == 'condition[T.Control]'
        assert outcome['summary']['contrast'] == 'condition_Control_vs_Treatment'
        assert (tmp_path / "run" / "report.html").exists()


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self):
        """Test CLI help command."""
        from typer.testing import CliRunner

        runner = CliRunner()
        result = runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "rnaseq_de" in result.output

    def test_version(self):
        from typer.testing import CliRunner

        result = CliRunner().invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert "rnaseq_de v" in result.output

    def test_simulate_and_validate(self, tmp_path):
        from typer.testing import CliRunner

        runner = CliRunner()
        out = tmp_path / "sim"
        result = runner.invoke(cli.app, ["simulate", "--output-dir", str(out), "--n-genes", "40", "--n-samples", "6"])

        assert result.exit_code == 0
        assert (out / "counts.tsv").exists()

        result = runner.invoke(cli.app, ["validate", str(out / "counts.tsv"), str(out / "metadata.tsv")])
        assert result.exit_code == 0
        assert "Inputs are valid" in result.output

    def test_validate_rejects_undefined_covariate(self, tmp_path):
        from typer.testing import CliRunner

        counts_file, metadata_file = create_sample_data(tmp_path, n_genes=20, n_samples=4)
        result = CliRunner().invoke(cli.app, [
            "validate", str(counts_file), str(metadata_file), "--design", "~ batch + condition"
        ])

        assert result.exit_code == 1

    def test_filter_command(self, tmp_path):
        from typer.testing import CliRunner

        counts_file, _ = create_sample_data(tmp_path, n_genes=50, n_samples=4)
        output_file = tmp_path / "filtered.tsv"
        result = CliRunner().invoke(cli.app, [
            "filter", str(counts_file), "--output-file", str(output_file), "--min-count", "50"
        ])

        assert result.exit_code == 0
        filtered = data.read_count_matrix(output_file)
        assert (filtered.sum(axis=1) >= 50).all()

    def test_run_command(self, tmp_path):
        from typer.testing import CliRunner

        counts_file, metadata_file = create_sample_data(tmp_path / "in", n_genes=100, n_samples=10)
        output_dir = tmp_path / "out"
        result = CliRunner().invoke(cli.app, [
            "run", str(counts_file), str(metadata_file),
            "--output-dir", str(output_dir), "--no-plots", "--no-shrink",
        ])

        assert result.exit_code == 0, result.output
        assert (output_dir / "deseq2_results.csv").exists()
        assert not (output_dir / "plots" / "ma_plot.png").exists()
        # the report does not depend on the plots
        assert (output_dir / "report.html").exists()

    def test_run_command_without_report(self, tmp_path):
        from typer.testing import CliRunner

        counts_file, metadata_file = create_sample_data(tmp_path / "in", n_genes=100, n_samples=10)
        output_dir = tmp_path / "out"
        result = CliRunner().invoke(cli.app, [
            "run", str(counts_file), str(metadata_file),
            "--output-dir", str(output_dir), "--no-plots", "--no-report", "--no-shrink",
        ])

        assert result.exit_code == 0, result.output
        assert (output_dir / "summary.json").exists()
        assert not (output_dir / "report.html").exists()

    def test_run_command_bad_contrast(self, tmp_path):
        from typer.testing import CliRunner

        counts_file, metadata_file = create_sample_data(tmp_path, n_genes=30, n_samples=4)
        result = CliRunner().invoke(cli.app, [
            "run", str(counts_file), str(metadata_file),
            "--output-dir", str(tmp_path / "out"), "--contrast", "condition,Drug,Control",
        ])

        assert result.exit_code == 1


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
