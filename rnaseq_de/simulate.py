"""
Synthetic RNA-seq count generation.

Produces a gene-by-sample count matrix drawn from a negative binomial model
together with a matching sample sheet, so the walkthrough can run without any
sequencing data on disk.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class CountSimulator:
    """Generate negative binomial count matrices with a known treatment effect."""

    def __init__(
        self,
        n_genes: int = 100,
        n_samples: int = 10,
        seed: int = 42,
        de_fraction: float = 0.1,
        log2_effect: float = 2.0,
        dispersion: float = 0.1,
        n_batches: int = 1,
    ):
        """
        Initialize count simulator.

        Args:
            n_genes: Number of genes (rows)
            n_samples: Number of samples (columns), split evenly between conditions
            seed: Random seed for reproducibility
            de_fraction: Fraction of genes with a treatment effect
            log2_effect: Magnitude of the treatment effect on the log2 scale
            dispersion: Negative binomial dispersion shared by all genes
            n_batches: Number of batches the samples are spread over
        """
        if n_genes < 1:
            raise ValueError(f"n_genes must be >= 1, got {n_genes}")
        if n_samples < 2:
            raise ValueError(f"n_samples must be >= 2, got {n_samples}")
        if not 0 <= de_fraction <= 1:
            raise ValueError(f"de_fraction must be in [0, 1], got {de_fraction}")
        if dispersion <= 0:
            raise ValueError(f"dispersion must be > 0, got {dispersion}")
        if n_batches < 1:
            raise ValueError(f"n_batches must be >= 1, got {n_batches}")

        self.n_genes = n_genes
        self.n_samples = n_samples
        self.seed = seed
        self.de_fraction = de_fraction
        self.log2_effect = log2_effect
        self.dispersion = dispersion
        self.n_batches = n_batches
        self.rng = np.random.default_rng(seed)

    @property
    def gene_ids(self) -> List[str]:
        width = max(4, len(str(self.n_genes)))
        return [f"gene_{i:0{width}d}" for i in range(1, self.n_genes + 1)]

    @property
    def sample_ids(self) -> List[str]:
        width = max(2, len(str(self.n_samples)))
        return [f"sample_{i:0{width}d}" for i in range(1, self.n_samples + 1)]

    def generate_metadata(self) -> pd.DataFrame:
        """Sample sheet: first half Control, second half Treatment, batches interleaved."""
        n_control = self.n_samples // 2
        conditions = ["Control"] * n_control + ["Treatment"] * (self.n_samples - n_control)

        metadata = pd.DataFrame(
            {"condition": conditions},
            index=pd.Index(self.sample_ids, name="sample_id"),
        )
        if self.n_batches > 1:
            metadata["batch"] = [f"batch{(i % self.n_batches) + 1}" for i in range(self.n_samples)]
        return metadata

    def generate_counts(self, metadata: Optional[pd.DataFrame] = None) -> Tuple[pd.DataFrame, pd.Series]:
        """
        Draw a count matrix for the given sample sheet.

        Returns:
            Tuple of (counts genes x samples, true log2 fold change per gene)
        """
        if metadata is None:
            metadata = self.generate_metadata()

        # Log-normal baseline expression, roughly matching bulk RNA-seq means
        base_mean = self.rng.lognormal(mean=4.0, sigma=1.5, size=self.n_genes)

        n_de = int(round(self.n_genes * self.de_fraction))
        true_lfc = np.zeros(self.n_genes)
        if n_de:
            de_idx = self.rng.choice(self.n_genes, size=n_de, replace=False)
            signs = self.rng.choice([-1.0, 1.0], size=n_de)
            true_lfc[de_idx] = signs * self.log2_effect

        treated = (metadata["condition"] == "Treatment").to_numpy()
        size_factors = self.rng.uniform(0.7, 1.4, size=len(metadata))

        mu = np.outer(base_mean, size_factors)
        mu[:, treated] *= np.power(2.0, true_lfc)[:, None]

        if "batch" in metadata.columns:
            batch_codes = pd.Categorical(metadata["batch"]).codes
            batch_effect = self.rng.normal(0.0, 0.2, size=(self.n_genes, batch_codes.max() + 1))
            mu *= np.exp(batch_effect[:, batch_codes])

        # NB(n, p) with n = 1/dispersion has mean mu when p = n / (n + mu)
        n = 1.0 / self.dispersion
        p = n / (n + mu)
        counts = self.rng.negative_binomial(n, p)

        counts_df = pd.DataFrame(
            counts.astype(np.int64),
            index=pd.Index(self.gene_ids, name="gene_id"),
            columns=metadata.index,
        )
        logger.debug(
            f"Simulated {self.n_genes} genes x {len(metadata)} samples, {n_de} with a treatment effect"
        )
        return counts_df, pd.Series(true_lfc, index=counts_df.index, name="true_log2FoldChange")

    def generate(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Generate a (counts, metadata) pair."""
        metadata = self.generate_metadata()
        counts, _ = self.generate_counts(metadata)
        return counts, metadata


def simulate_dataset(
    n_genes: int = 100,
    n_samples: int = 10,
    seed: int = 42,
    **kwargs,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Create a synthetic count matrix and sample sheet.

    Args:
        n_genes: Number of genes
        n_samples: Number of samples
        seed: Random seed
        **kwargs: Passed to CountSimulator

    Returns:
        Tuple of (counts genes x samples, metadata samples x covariates)
    """
    logger.info(f"Simulating {n_genes} genes across {n_samples} samples (seed={seed})")
    return CountSimulator(n_genes=n_genes, n_samples=n_samples, seed=seed, **kwargs).generate()
