"""
GhostScan error taxonomy.

Every domain error carries a stable machine-readable ``code`` that API
responses and ``ScanJob.last_error`` surface to callers.
"""
from __future__ import annotations

from typing import Optional


class GhostScanError(Exception):
    code = "internal-error"
    status_code = 500

    def __init__(self, message: Optional[str] = None, resource: Optional[str] = None):
        self.message = message or self.code
        self.resource = resource
        super().__init__(self.message)

    def describe(self) -> str:
        """Human-readable ``code: message`` line for ``last_error``."""
        if self.message == self.code:
            return self.code
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "resource": self.resource,
        }


# ── Admission (pre-job) ─────────────────────────────────────────────────

class ProfileNotFoundError(GhostScanError):
    code = "profile-not-found"
    status_code = 404


class ScanLimitExceededError(GhostScanError):
    code = "scan-limit-exceeded"
    status_code = 403

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, resource="scans")


class FollowerLimitExceededError(GhostScanError):
    code = "follower-limit-exceeded"
    status_code = 403

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, resource="followers")


# ── Parse errors ─────────────────────────────────────────────────────────

class ExportParseError(GhostScanError):
    code = "invalid-archive"
    status_code = 422


class InvalidArchiveError(ExportParseError):
    code = "invalid-archive"


class MissingFollowerDataError(ExportParseError):
    code = "missing-follower-data"


class ArchiveTooLargeError(ExportParseError):
    code = "archive-too-large"
    status_code = 413


# ── Pipeline ─────────────────────────────────────────────────────────────

class CorruptDataError(GhostScanError):
    code = "corrupt-data"


class PersistenceFailedError(GhostScanError):
    code = "persistence-failed"


class ScanTimeoutError(GhostScanError):
    code = "timeout"


# ── Caller errors ────────────────────────────────────────────────────────

class NotFoundError(GhostScanError):
    code = "not-found"
    status_code = 404


class InvalidStateForRetryError(GhostScanError):
    code = "invalid-state-for-retry"
    status_code = 409


class InvalidTransitionError(GhostScanError):
    code = "invalid-transition"
    status_code = 409
