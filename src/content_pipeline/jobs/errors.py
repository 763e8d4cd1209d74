"""Typed errors raised by queue operations."""

from __future__ import annotations


class AdminOperationError(RuntimeError):
    """Base class for rejected operator actions."""


class JobNotFoundError(AdminOperationError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(AdminOperationError):
    def __init__(self, job_id: str, current: str, requested: str, detail: str = "") -> None:
        message = f"Job {job_id} cannot move from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.job_id = job_id
        self.current = current
        self.requested = requested


class RetryLimitReachedError(AdminOperationError):
    def __init__(self, job_id: str, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Job {job_id} reached its retry limit ({retry_count}/{max_retries}); "
            "pass override_limit to force one more attempt.",
        )
        self.job_id = job_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class ConcurrentModificationError(AdminOperationError):
    def __init__(self, job_id: str, action: str) -> None:
        super().__init__(
            f"Job state changed concurrently while running {action}; "
            f"please retry command (job_id={job_id}).",
        )
        self.job_id = job_id
        self.action = action
