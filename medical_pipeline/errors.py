"""
Exception types raised by the medical records pipeline.
"""


class PipelineError(Exception):
    """Base class for every pipeline failure."""


class SchemaError(PipelineError):
    """Raised when an entity name or landing prefix has no declared schema."""


class RowParseError(PipelineError):
    """Raised when a CSV row cannot be converted to the entity's column types."""

    def __init__(self, line_number: int, reason: str):
        super().__init__(f"line {line_number}: {reason}")
        self.line_number = line_number
        self.reason = reason


class LandingStoreError(PipelineError):
    """Raised when an S3 operation fails after all retry attempts."""


class SyncError(PipelineError):
    """Raised when an incremental sync tick fails; the offset was not advanced."""
