"""Error taxonomy shared by the ingestion, review and import stages."""

from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(RuntimeError):
    """Base class for every error raised by the pipeline."""


# ---------- Directory / ingestion ----------


class DirectoryError(PipelineError):
    """Raised by a directory backend for a failed outbound call."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(DirectoryError):
    """The directory asked us to slow down (HTTP 429 or equivalent)."""


class Unauthorized(DirectoryError):
    """Credentials were rejected; retrying will not help."""


class TransientDirectoryError(DirectoryError):
    """Network failure, timeout or 5xx response."""


class IngestionFailed(PipelineError):
    """The directory could not be paged: fatal error or retries exhausted."""

    def __init__(self, message: str, attempts: int = 0, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.details = details or {}


# ---------- Candidate workflow ----------


class CandidateNotFound(PipelineError):
    pass


class InvalidStateTransition(PipelineError):
    """A candidate transition was attempted from a state that does not allow it."""

    def __init__(self, candidate_id: str, current: str, target: str) -> None:
        super().__init__(f"candidate {candidate_id} cannot move from {current} to {target}")
        self.candidate_id = candidate_id
        self.current = current
        self.target = target


class ConflictAlreadyDecided(InvalidStateTransition):
    """Another reviewer decided the candidate first."""

    def __init__(self, candidate_id: str, current: str, target: str) -> None:
        super().__init__(candidate_id, current, target)
        self.args = (f"candidate {candidate_id} was already decided ({current})",)


class DuplicatePendingCandidate(PipelineError):
    """A pending candidate already exists for the raw place."""

    def __init__(self, raw_place_id: str) -> None:
        super().__init__(f"raw place {raw_place_id} already has a pending candidate")
        self.raw_place_id = raw_place_id


# ---------- Sync jobs ----------


class SyncJobNotFound(PipelineError):
    pass


class AlreadyRunning(PipelineError):
    """A job for the same scope is still processing."""

    def __init__(self, scope_key: str, sync_job_id: str) -> None:
        super().__init__(f"sync {sync_job_id} is already processing scope {scope_key!r}")
        self.scope_key = scope_key
        self.sync_job_id = sync_job_id


# ---------- Import ----------


class ListingGatewayError(PipelineError):
    """The listing collaborator rejected a request or could not be reached."""


class ImportPersistenceFailed(PipelineError):
    """Listing creation failed; the candidate stays approved and can be retried."""

    def __init__(self, candidate_id: str, reason: str) -> None:
        super().__init__(f"failed to persist listing for candidate {candidate_id}: {reason}")
        self.candidate_id = candidate_id
        self.reason = reason
