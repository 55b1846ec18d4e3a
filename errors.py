"""
Error taxonomy for the saliva differential expression pipeline.

Structural problems (missing inputs, misaligned keys, bad counts) abort a run.
Per-gene problems never raise; they surface as NaN values in result tables.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for errors raised by pipeline stages."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


class MissingInputError(PipelineError):
    """A required column, quantification file or annotation source is absent."""


class SchemaMismatchError(PipelineError):
    """Sample keys do not line up between metadata and count data."""


class InvalidCountsError(PipelineError):
    """Count matrix contains negative or non-finite values."""


class ContrastNotFoundError(PipelineError):
    """Requested factor, level or coefficient is not part of the fitted design."""


class ExportError(PipelineError):
    """A result file could not be written."""


class ConfigurationError(PipelineError):
    """Analysis configuration is malformed."""
