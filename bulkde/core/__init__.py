"""
bulkde core module with exception hierarchy and base classes.

This module provides the core exception hierarchy and the provenance
primitives shared by every service.
"""

from bulkde.core.exceptions import (
    AnnotationError,
    BulkDECoreError,
    DataLoadError,
    PathwayDiagramError,
    SampleAlignmentError,
    UnsupportedFormatError,
)


class ValidationError(BulkDECoreError):
    """Exception raised for data validation failures."""

    pass


class ProvenanceError(BulkDECoreError):
    """Exception raised for provenance tracking failures."""

    pass


# Design-related exceptions
class DesignError(BulkDECoreError):
    """Base exception for experimental design handling."""

    pass


class FormulaError(DesignError):
    """Raised when formula parsing fails."""

    pass


class DesignMatrixError(DesignError):
    """Raised when design matrix construction fails."""

    pass


__all__ = [
    "BulkDECoreError",
    "DataLoadError",
    "UnsupportedFormatError",
    "SampleAlignmentError",
    "AnnotationError",
    "PathwayDiagramError",
    "ValidationError",
    "ProvenanceError",
    "DesignError",
    "FormulaError",
    "DesignMatrixError",
]
