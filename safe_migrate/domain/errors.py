"""Engine error taxonomy. None of these are retried internally."""

from typing import Optional


class MigrationSafetyError(Exception):
    """Base class for every planning failure."""

    def __init__(self, message: str, *, plan_id: Optional[str] = None, operation_id: Optional[str] = None):
        super().__init__(message)
        self.plan_id = plan_id
        self.operation_id = operation_id


class ClassificationError(MigrationSafetyError):
    """Operation kind is unknown; needs manual review."""


class UnsafeOperationError(MigrationSafetyError):
    """Operation was blocked; the author must amend it."""


class VerificationMismatchError(MigrationSafetyError):
    """Backfill verification did not match. The plan is frozen."""


class SchedulingCycleError(MigrationSafetyError):
    """Statements cannot be ordered across or within buckets."""


class LifecycleTransitionError(MigrationSafetyError):
    """A lifecycle transition was requested out of order or on a frozen plan."""


class LifecycleConflictError(LifecycleTransitionError):
    """A column already has an active lifecycle plan."""


class PlanNotFoundError(MigrationSafetyError):
    pass
