"""
Core exceptions for bulkde.

This module provides the exception hierarchy shared by the data loading,
modelling and reporting layers. Each error carries a human-readable
``message`` and a ``details`` dictionary with structured context.
"""

from typing import Any, Dict, Optional


class BulkDECoreError(Exception):
    """Base exception for all bulkde errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DataLoadError(BulkDECoreError):
    """Raised when a count matrix or metadata table cannot be loaded or is invalid."""

    pass


class UnsupportedFormatError(DataLoadError):
    """
    Raised when a file suffix maps to no known reader.

    Attributes:
        details: Contains:
            - path: File that failed to load
            - suffix: Detected suffix
            - suggestions: Supported suffixes

    Example:
        try:
            counts = loader.load_counts(path)
        except UnsupportedFormatError as e:
            for suggestion in e.details.get("suggestions", []):
                print(f"  - {suggestion}")
    """

    pass


class SampleAlignmentError(DataLoadError):
    """
    Raised when count-matrix columns and metadata rows cannot be aligned.

    Attributes:
        details: Contains:
            - missing_in_metadata: Samples present in counts but not in metadata
    """

    pass


class AnnotationError(BulkDECoreError):
    """Raised when the gene annotation table cannot be retrieved or used."""

    pass


class PathwayDiagramError(BulkDECoreError):
    """Raised when a pathway image or gene link cannot be fetched."""

    pass
