"""
Exceptions raised by the analysis pipeline.

Input problems are ``ValueError`` subclasses so callers can catch them the
same way as any other bad-argument error. I/O problems are left as the
builtin ``OSError`` family.
"""


class RnaseqDEError(Exception):
    """Base exception for rnaseq_de."""

    pass


class SchemaError(RnaseqDEError, ValueError):
    """Design formula or contrast references a covariate or level that does not exist."""

    pass


class ShapeError(RnaseqDEError, ValueError):
    """Count matrix and metadata disagree, or counts are not non-negative integers."""

    pass


class DegenerateDataError(RnaseqDEError, ValueError):
    """Nothing left to test: no genes, or a factor with fewer than two levels."""

    pass
