"""Error taxonomy for the metadata pipeline.

Routes translate these into HTTP responses; background job steps translate
them into job log entries.
"""

from __future__ import annotations


class ShelfarrError(Exception):
    """Base class for all pipeline errors."""


class SourceError(ShelfarrError):
    """A metadata source could not answer."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(message)
        self.source = source
        self.message = message


class SourceConfigurationError(SourceError):
    """Missing or rejected credentials for a source."""

    def __init__(self, source: str, message: str, hint: str | None = None) -> None:
        super().__init__(source, message)
        self.hint = hint or f"Check the {source} credentials in settings."


class SourceRequestError(SourceError):
    """Network failure, timeout or unexpected response from a source."""

    def __init__(self, source: str, message: str, status_code: int | None = None) -> None:
        super().__init__(source, message)
        self.status_code = status_code


class JobNotFoundError(ShelfarrError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Metadata job {job_id} not found")
        self.job_id = job_id


class JobStateError(ShelfarrError):
    """Operation is not valid for the job's current step."""


class JobConflictError(ShelfarrError):
    """The job record changed underneath a read-modify-write."""


class InvalidRequestError(ShelfarrError):
    """Caller supplied an unknown file, field, group or malformed value."""


class ArchiveError(ShelfarrError):
    """A comic archive could not be opened, read or rewritten."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(message)
        self.path = path
        self.message = message
