"""
Analysis configuration.

Holds every tunable of a run in one place, with defaults matching the
walkthrough, and reads/writes them as YAML.
"""

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from .utils import validate_file_exists

logger = logging.getLogger(__name__)

DEFAULT_DESIGN_FORMULA = "~ condition"
DEFAULT_CONTRAST = ("condition", "Treatment", "Control")
DEFAULT_MIN_COUNT = 10
DEFAULT_ALPHA = 0.05
DEFAULT_LFC_THRESHOLD = 1.0
DEFAULT_TOP_N = 20

VALID_PLOT_FORMATS = ["png", "pdf", "svg"]


@dataclass
class AnalysisConfig:
    """Parameters of a differential expression run."""

    design: str = DEFAULT_DESIGN_FORMULA
    contrast: Tuple[str, str, str] = DEFAULT_CONTRAST
    min_count: int = DEFAULT_MIN_COUNT
    alpha: float = DEFAULT_ALPHA
    lfc_threshold: float = DEFAULT_LFC_THRESHOLD
    top_n: int = DEFAULT_TOP_N
    shrink: bool = True
    shrink_coeff: Optional[str] = None
    n_cpus: int = 1
    refit_cooks: bool = True
    cooks_filter: bool = True
    independent_filter: bool = True
    # Refuse contrasts on covariates with more than two levels
    strict_two_level: bool = False
    color_by: Optional[str] = None
    seed: int = 42
    plot_format: str = "png"

    def __post_init__(self):
        self.contrast = tuple(self.contrast)
        self.validate()

    def validate(self) -> None:
        """
        Check parameter ranges.

        Raises:
            ValueError: If any parameter is out of range
        """
        if "~" not in self.design:
            raise ValueError(f"Design formula must contain '~': {self.design!r}")
        if len(self.contrast) != 3 or not all(isinstance(c, str) and c for c in self.contrast):
            raise ValueError("Contrast must be [factor, tested_level, reference_level]")
        if self.min_count < 0:
            raise ValueError(f"min_count must be >= 0, got {self.min_count}")
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.lfc_threshold < 0:
            raise ValueError(f"lfc_threshold must be >= 0, got {self.lfc_threshold}")
        if self.top_n < 1:
            raise ValueError(f"top_n must be >= 1, got {self.top_n}")
        if self.n_cpus < 1:
            raise ValueError(f"n_cpus must be >= 1, got {self.n_cpus}")
        if self.plot_format not in VALID_PLOT_FORMATS:
            raise ValueError(f"Invalid plot format: {self.plot_format} (choose from {VALID_PLOT_FORMATS})")

    @property
    def factor(self) -> str:
        return self.contrast[0]

    def update(self, **overrides: Any) -> "AnalysisConfig":
        """
        Return a copy with the given fields replaced.

        ``None`` values are skipped so unset CLI options keep the configured value.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        values = self.to_dict()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return AnalysisConfig(**values)

    def to_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        values["contrast"] = list(self.contrast)
        return values

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "AnalysisConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**values)

    @classmethod
    def from_yaml(cls, config_file: Union[str, Path]) -> "AnalysisConfig":
        """
        Load configuration from a YAML file.

        Args:
            config_file: Path to YAML file

        Returns:
            AnalysisConfig with file values over the defaults
        """
        path = validate_file_exists(config_file)
        with open(path, 'r') as f:
            values = yaml.safe_load(f) or {}

        if not isinstance(values, dict):
            raise ValueError(f"Configuration file must contain a mapping: {path}")

        logger.debug(f"Loaded configuration from {path}: {values}")
        return cls.from_dict(values)

    def to_yaml(self, output_file: Union[str, Path]) -> Path:
        """Write configuration to a YAML file."""
        path = Path(output_file)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path
