"""Error taxonomy for stepflow workflows."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class StepflowError(Exception):
    """Base class for all stepflow errors."""

    retriable: bool = False
    partial_output: Any = None

    def __init__(self, message: str, *, retriable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if retriable is not None:
            self.retriable = retriable


class ValidationError(StepflowError):
    """A workflow definition is malformed and cannot be published."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid workflow definition: " + "; ".join(self.problems))


class StateError(StepflowError):
    """Operation is not allowed in the current state."""


class NotFoundError(StepflowError):
    """A workflow definition or execution does not exist."""


class StepError(StepflowError):
    """Failure raised by a step executor."""

    retriable = True


class ConfigError(StepError):
    """Resolved step configuration is missing required keys."""

    retriable = False


class ExpressionError(StepError):
    """A template or expression could not be evaluated."""

    retriable = False


class TransportError(StepError):
    """Network or transport level failure."""

    retriable = True


class StepTimeoutError(StepError):
    """A step did not finish within its timeout."""

    retriable = True


class ProviderError(StepError):
    """An external provider answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Any = None,
    ) -> None:
        self.status_code = status_code
        self.response = response
        retriable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, retriable=retriable)


class ParallelStepError(StepError):
    """One or more sub-steps of a parallel block failed."""

    def __init__(
        self,
        results: Dict[str, Any],
        errors: Dict[str, str],
        retriable: bool = False,
    ) -> None:
        self.results = results
        self.errors = errors
        self.partial_output = {"results": results, "errors": errors}
        failed = ", ".join(sorted(errors))
        super().__init__(
            f"{len(errors)} parallel sub-step(s) failed: {failed}",
            retriable=retriable,
        )


class MaxRetriesExceeded(StepflowError):
    """A step kept failing after all permitted attempts."""

    def __init__(self, step_id: str, attempts: int, last_error: str) -> None:
        self.step_id = step_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"max retries exceeded for step {step_id} after {attempts} attempts: {last_error}"
        )
