from __future__ import annotations


class MonitorError(Exception):
    """Base class for deployment monitoring errors."""


class TransportError(MonitorError):
    """The lister process or an HTTP target could not be reached in time."""


class ParseError(MonitorError):
    """Lister output could not be understood."""


class ConsecutiveFailureLimitExceeded(MonitorError):
    def __init__(self, failures: int, limit: int, last_error: str | None = None) -> None:
        self.failures = int(failures)
        self.limit = int(limit)
        self.last_error = last_error
        msg = f"{self.failures} consecutive failures (limit {self.limit})"
        if last_error:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)


class DuplicateSessionError(MonitorError):
    def __init__(self, commit_id: str, existing_session_id: str) -> None:
        self.commit_id = commit_id
        self.existing_session_id = existing_session_id
        super().__init__(
            f"Monitoring session already in flight for commit {commit_id[:8]}: {existing_session_id}"
        )


class SessionNotFoundError(MonitorError):
    pass


class SessionStopped(MonitorError):
    """Raised at a cancellation checkpoint once the owning session was stopped."""


class StoreError(MonitorError):
    """Session/report documents could not be written or read."""
