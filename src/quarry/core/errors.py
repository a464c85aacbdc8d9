"""Exception taxonomy for the ingestion and retrieval pipeline."""

from typing import Optional


class QuarryError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(QuarryError):
    """Invalid chunk size, weights, batch size or other settings."""


class UploadRejected(QuarryError):
    """Upload failed validation (size or type) before a file record was created."""


class ExtractionFailure(QuarryError):
    """Text could not be extracted from an uploaded file."""


class UnsupportedFormat(ExtractionFailure):
    """No extractor exists for the file's mime type or extension."""


class CorruptInput(ExtractionFailure):
    """The extractor recognised the format but could not read the data."""


class ProviderFailure(QuarryError):
    """The embedding provider failed to return vectors for a batch."""


class ProviderAuthError(ProviderFailure):
    """Provider rejected the credentials."""


class RateLimited(ProviderFailure):
    """Provider throttled the request."""


class TransientProviderError(ProviderFailure):
    """Timeouts, connection resets and upstream 5xx responses."""


class PersistenceFailure(QuarryError):
    """Store unavailable or a constraint was violated."""


class FileNotFound(PersistenceFailure):
    """No file record with the given id exists in the room."""

    def __init__(self, room_id: str, file_id: str):
        super().__init__(f"File {file_id} not found in room {room_id}")
        self.room_id = room_id
        self.file_id = file_id


class LeaseLost(PersistenceFailure):
    """A conditional write found the file no longer claimed by this worker."""


class FileLocked(QuarryError):
    """Another worker holds a live lease on the file."""

    def __init__(self, file_id: str, locked_by: Optional[str] = None):
        holder = f" by {locked_by}" if locked_by else ""
        super().__init__(f"File {file_id} is locked{holder}")
        self.file_id = file_id
        self.locked_by = locked_by


class InvalidTransition(QuarryError):
    """A state machine event does not apply to the current file state."""
