"""
Data ingestion module.

This module provides functions for reading count matrices and sample sheets,
loading the bundled reference dataset, merging per-sample count files and
checking that counts and metadata describe the same samples.
"""

import logging
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import ShapeError
from .utils import validate_file_exists

logger = logging.getLogger(__name__)


def _separator_for(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if ".csv" in suffixes:
        return ","
    return "\t"


def read_count_matrix(count_file: Union[str, Path]) -> pd.DataFrame:
    """
    Read a genes x samples count matrix.

    The first column holds gene identifiers. ``.csv`` files are comma
    separated, anything else is read as tab separated.

    Args:
        count_file: Path to count matrix

    Returns:
        Validated integer count DataFrame
    """
    path = validate_file_exists(count_file)
    counts = pd.read_csv(path, sep=_separator_for(path), index_col=0, comment="#")
    counts.index = counts.index.astype(str)
    counts.index.name = "gene_id"
    counts.columns = counts.columns.astype(str)

    logger.info(f"Loaded count matrix {path.name}: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return validate_count_matrix(counts)


def read_metadata(metadata_file: Union[str, Path]) -> pd.DataFrame:
    """
    Read a samples x covariates sample sheet.

    Args:
        metadata_file: Path to sample sheet; first column holds sample identifiers

    Returns:
        Metadata DataFrame indexed by sample identifier
    """
    path = validate_file_exists(metadata_file)
    metadata = pd.read_csv(path, sep=_separator_for(path), index_col=0, comment="#")
    metadata.index = metadata.index.astype(str)
    metadata.index.name = "sample_id"

    if metadata.index.duplicated().any():
        dups = metadata.index[metadata.index.duplicated()].unique().tolist()
        raise ShapeError(f"Duplicate sample identifiers in metadata: {dups}")

    logger.info(f"Loaded metadata {path.name}: {len(metadata)} samples, covariates {list(metadata.columns)}")
    return metadata


def load_reference_dataset(debug: bool = False) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Load the synthetic example dataset shipped with pydeseq2.

    Args:
        debug: Load the reduced debug version of the dataset

    Returns:
        Tuple of (counts genes x samples, metadata samples x covariates)
    """
    from pydeseq2.utils import load_example_data

    counts = load_example_data(modality="raw_counts", dataset="synthetic", debug=debug)
    metadata = load_example_data(modality="metadata", dataset="synthetic", debug=debug)

    # pydeseq2 stores samples as rows
    counts = counts.T
    counts.index = counts.index.astype(str)
    counts.index.name = "gene_id"
    counts.columns = counts.columns.astype(str)
    metadata.index = metadata.index.astype(str)
    metadata.index.name = "sample_id"

    logger.info(f"Loaded reference dataset: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return validate_count_matrix(counts), metadata


def merge_count_files(count_files: List[Path], output_file: Union[str, Path, None] = None) -> pd.DataFrame:
    """
    Merge per-sample featureCounts outputs into a single matrix.

    Args:
        count_files: Count file paths; the sample name is the file stem
            with any ``_counts`` suffix removed
        output_file: Optional TSV path for the merged matrix

    Returns:
        Merged count DataFrame (genes x samples)
    """
    if not count_files:
        raise ValueError("No count files given")

    count_dfs = []

    for count_file in count_files:
        path = validate_file_exists(count_file)
        df = pd.read_csv(path, sep='\t', comment='#')

        sample_name = path.name.split('.')[0]
        if sample_name.endswith('_counts'):
            sample_name = sample_name[:-len('_counts')]

        # featureCounts: gene id first, this sample's counts last
        gene_col = df.columns[0]
        count_col = df.columns[-1]

        sample_df = df[[gene_col, count_col]].copy()
        sample_df.columns = ['gene_id', sample_name]
        sample_df['gene_id'] = sample_df['gene_id'].astype(str)
        sample_df.set_index('gene_id', inplace=True)

        count_dfs.append(sample_df)

    merged_df = pd.concat(count_dfs, axis=1, join='outer')
    merged_df = merged_df.fillna(0)
    merged_df = validate_count_matrix(merged_df)

    if output_file is not None:
        merged_df.to_csv(output_file, sep='\t')
        logger.info(f"Merged {len(count_files)} count files into {output_file}")

    return merged_df


def validate_count_matrix(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Check that a count matrix holds non-negative integers with unique identifiers.

    Args:
        counts: Candidate genes x samples matrix

    Returns:
        Copy of the matrix with an int64 dtype

    Raises:
        ShapeError: If the matrix is empty, has duplicate identifiers, or holds
            missing, non-numeric, negative or fractional values
    """
    if counts.shape[1] == 0:
        raise ShapeError("Count matrix has no samples")

    if counts.index.duplicated().any():
        dups = counts.index[counts.index.duplicated()].unique().tolist()[:10]
        raise ShapeError(f"Duplicate gene identifiers in count matrix: {dups}")

    if counts.columns.duplicated().any():
        dups = counts.columns[counts.columns.duplicated()].unique().tolist()
        raise ShapeError(f"Duplicate sample identifiers in count matrix: {dups}")

    non_numeric = [c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])]
    if non_numeric:
        raise ShapeError(f"Count matrix contains non-numeric columns: {non_numeric}")

    values = counts.to_numpy(dtype=float)

    if np.isnan(values).any():
        raise ShapeError("Count matrix contains missing values")

    if (values < 0).any():
        raise ShapeError("Count matrix contains negative values")

    if not np.all(np.equal(np.mod(values, 1), 0)):
        raise ShapeError("Count matrix contains non-integer values")

    return counts.astype(np.int64)


def validate_sample_alignment(counts: pd.DataFrame, metadata: pd.DataFrame) -> None:
    """
    Require count columns and metadata rows to list the same samples in the same order.

    Raises:
        ShapeError: If the identifier sets or their order differ
    """
    count_samples = [str(s) for s in counts.columns]
    metadata_samples = [str(s) for s in metadata.index]

    if set(count_samples) != set(metadata_samples):
        missing_meta = sorted(set(count_samples) - set(metadata_samples))
        missing_counts = sorted(set(metadata_samples) - set(count_samples))
        raise ShapeError(
            "Sample identifiers differ between count matrix and metadata: "
            f"missing from metadata {missing_meta}, missing from counts {missing_counts}"
        )

    if count_samples != metadata_samples:
        raise ShapeError(
            "Metadata rows are not in the same order as count matrix columns; "
            "use align_metadata() to reorder them"
        )


def align_metadata(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Reorder metadata rows to follow the count matrix columns.

    Args:
        counts: Count matrix (genes x samples)
        metadata: Sample sheet holding exactly the same samples

    Returns:
        Reordered copy of the metadata

    Raises:
        ShapeError: If the sample sets differ
    """
    if set(map(str, counts.columns)) != set(map(str, metadata.index)):
        validate_sample_alignment(counts, metadata)

    aligned = metadata.loc[list(counts.columns)].copy()
    logger.debug("Metadata reordered to count matrix column order")
    return aligned


def write_inputs(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    output_dir: Union[str, Path],
) -> Tuple[Path, Path]:
    """
    Save a count matrix and sample sheet as TSV files.

    Returns:
        Tuple of (counts path, metadata path)
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    counts_file = output_dir / "counts.tsv"
    metadata_file = output_dir / "metadata.tsv"
    counts.to_csv(counts_file, sep='\t')
    metadata.to_csv(metadata_file, sep='\t')

    logger.info(f"Count matrix saved to: {counts_file}")
    logger.info(f"Sample metadata saved to: {metadata_file}")
    return counts_file, metadata_file
