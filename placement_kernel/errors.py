"""Exceptions raised by the placement kernel."""

from typing import Optional


class PlacementError(Exception):
    """Base class for all placement kernel errors."""
    pass


class EligibilityError(PlacementError):
    """Base class for eligibility evaluation errors."""
    pass


class ResolutionError(EligibilityError):
    """
    No rule is registered for a condition variant.

    This is a wiring defect, never a data condition. It always propagates and
    is never treated as "ineligible".
    """

    def __init__(self, condition_type: str, message: Optional[str] = None):
        self.condition_type = condition_type
        super().__init__(
            message or f"No rule registered for condition variant: {condition_type}"
        )


class MalformedConditionError(EligibilityError):
    """Structured data could not be parsed into a condition."""
    pass


class TypeMismatch(EligibilityError):
    """A context value has the wrong shape for a rule. Recovered as ineligible."""

    def __init__(self, key: str, expected: str, actual: object):
        self.key = key
        self.expected = expected
        self.actual_type = type(actual).__name__
        super().__init__(
            f"Context key '{key}' expected {expected}, got {self.actual_type}"
        )


class GuardFailure(PlacementError):
    """A guard raised during a pipeline run. The run was aborted."""

    def __init__(self, guard_name: str, cause: BaseException):
        self.guard_name = guard_name
        self.cause = cause
        super().__init__(f"Guard {guard_name} failed: {cause!r}")


class StorageFailure(PlacementError):
    """A storage or history backend failed."""
    pass


class BuilderReleasedError(PlacementError):
    """A released state builder was mutated."""
    pass
