"""
Error taxonomy for the backup pipeline.

Every error carries the name of the stage that raised it and, where an
external tool was involved, that tool's exit status. The runner logs both
before surfacing the failure.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    stage = None

    def __init__(self, message: str, stage: Optional[str] = None, exit_status: Optional[int] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.exit_status = exit_status


class ConfigurationError(PipelineError):
    """Raised when configuration is missing or invalid. No side effects have happened yet."""
    stage = 'config'


class ConcurrentRunError(PipelineError):
    """Raised when another run already holds the staging lock."""
    stage = 'lock'


class SourceUnavailable(PipelineError):
    """Raised when a configured source path does not exist or cannot be read."""
    stage = 'collect'


class StagingWriteError(PipelineError):
    """Raised when the staging directory cannot be written."""
    stage = 'collect'


class DumpExecutionError(PipelineError):
    """Raised when the database export command fails."""
    stage = 'dump'


class ArchiveCreationError(PipelineError):
    """Raised when archive creation fails."""
    stage = 'archive'


class EncryptionError(PipelineError):
    """Raised when encrypting or decrypting an archive fails."""
    stage = 'encrypt'


class DeliveryError(PipelineError):
    """Raised when the final artifact cannot be delivered."""
    stage = 'deliver'
