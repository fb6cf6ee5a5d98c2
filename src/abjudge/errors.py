"""Error taxonomy for the evaluation engine."""

from __future__ import annotations


class AbJudgeError(Exception):
    """Base class for engine errors."""


class MetricsUnavailable(AbJudgeError):
    """
    The platform could not return metrics for a published reference.

    Transient and per-variant: the engine skips the variant for this pass.
    """

    def __init__(self, published_ref: object, reason: str) -> None:
        super().__init__(f"metrics unavailable for {published_ref!r}: {reason}")
        self.published_ref = published_ref
        self.reason = reason


class LeaseConflict(AbJudgeError):
    """Another evaluation owns the test (or took over an expired lease)."""

    def __init__(self, test_id: str) -> None:
        super().__init__(f"test {test_id} is leased by another evaluation")
        self.test_id = test_id


class StoreUnavailable(AbJudgeError):
    """The test/variant store could not be read or written."""


class InvalidTestState(AbJudgeError):
    """A test that is not running/unchecked reached an operation that needs one."""

    def __init__(self, test_id: str, detail: str) -> None:
        super().__init__(f"test {test_id}: {detail}")
        self.test_id = test_id
        self.detail = detail


class AbTestNotFound(AbJudgeError, LookupError):
    def __init__(self, test_id: str) -> None:
        super().__init__(f"test {test_id} not found")
        self.test_id = test_id


class PassCancelled(AbJudgeError):
    """The pass was cancelled while a test was leased."""
