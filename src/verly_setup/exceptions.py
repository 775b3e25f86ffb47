"""Exception hierarchy for the setup workflow.

Every error raised by this package extends :class:`SetupError`, a
:class:`dataknobs_common.exceptions.DataknobsError` carrying a context
dictionary with structured details (ids, steps, HTTP status) for logging
and for the UI layer. Where a common category exists the setup error also
extends it, so `except NotFoundError` from dataknobs_common catches a
missing chatbot too.

Example:
    ```python
    from verly_setup.exceptions import SetupError, ValidationError

    try:
        controller.submit()
    except ValidationError as e:
        print(f"Invalid input: {e} ({e.context})")
    except SetupError as e:
        logger.error("Setup failed: %s", e)
    ```

Taxonomy:
    - ValidationError: bad user input, recovered locally
    - BackendError: a backend call failed (NotFoundError,
      VersionConflictError, BackendTimeoutError and TransientBackendError
      refine it)
    - ProcessingError: the step-2 job failed as a whole
    - PersistenceError: the completion write failed
    - StaleStateError: the session reached an impossible combination
    - InvalidStepError / InvalidTransitionError: step machine misuse
"""

from __future__ import annotations

from typing import Any

from dataknobs_common.exceptions import (
    ConcurrencyError,
    DataknobsError,
    OperationError,
)
from dataknobs_common.exceptions import NotFoundError as CommonNotFoundError
from dataknobs_common.exceptions import TimeoutError as CommonTimeoutError
from dataknobs_common.exceptions import ValidationError as CommonValidationError
from dataknobs_common.transitions import (
    InvalidTransitionError as StatusTransitionError,
)


class SetupError(DataknobsError):
    """Base exception for the setup workflow.

    Attributes:
        context: Dictionary containing contextual information about the error

    Args:
        message: Human-readable error message
        context: Optional dictionary with error context (ids, steps, etc.)

    Example:
        ```python
        error = SetupError("Operation failed", context={"chatbot_id": "42"})
        str(error)
        # 'Operation failed'
        error.context
        # {'chatbot_id': '42'}
        ```
    """


class ValidationError(SetupError, CommonValidationError):
    """Raised when user input fails validation.

    Recovered locally: the message is shown to the user, no step
    transition happens and no network call is made.
    """


class BackendError(SetupError, OperationError):
    """Raised when a backend call fails.

    Attributes:
        status_code: HTTP status code if the failure came from a response
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = dict(context or {})
        if status_code is not None:
            ctx.setdefault("status_code", status_code)
        super().__init__(message, context=ctx)
        self.status_code = status_code


class TransientBackendError(BackendError):
    """Raised for failures worth retrying: connection errors and 5xx responses."""


class NotFoundError(BackendError, CommonNotFoundError):
    """Raised when a chatbot (or another resource) does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} '{resource_id}' not found",
            status_code=404,
            context={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class VersionConflictError(BackendError, ConcurrencyError):
    """Raised when a write carries a stale record version.

    Attributes:
        expected_version: Version supplied by the writer
        actual_version: Version currently stored (None if unknown)
    """

    def __init__(
        self,
        chatbot_id: str,
        expected_version: int,
        actual_version: int | None = None,
    ):
        super().__init__(
            f"Version conflict on chatbot '{chatbot_id}': "
            f"wrote version {expected_version}, current is {actual_version}",
            status_code=409,
            context={
                "chatbot_id": chatbot_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.chatbot_id = chatbot_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class BackendTimeoutError(TransientBackendError, CommonTimeoutError):
    """Raised when a backend call does not complete in time."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} timed out after {timeout:g}s",
            context={"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class ProcessingError(SetupError):
    """Raised when chatbot creation and inference fail as a whole."""


class PersistenceError(SetupError):
    """Raised when the completion state cannot be written to the server."""


class StaleStateError(SetupError):
    """Raised when the session holds an impossible combination of values.

    The typical case is a step past processing with no chatbot id.
    """

    def __init__(self, step: int, reason: str):
        super().__init__(
            f"Invalid setup state at step {step}: {reason}",
            context={"step": step, "reason": reason},
        )
        self.step = step


class InvalidStepError(SetupError):
    """Raised when a step number outside 1..7 is requested."""

    def __init__(self, step: Any):
        super().__init__(
            f"Step must be an integer between 1 and 7, got {step!r}",
            context={"step": step},
        )
        self.step = step


class InvalidTransitionError(SetupError, StatusTransitionError):
    """Raised when a step transition is not allowed.

    Steps are integers here; the ``current_status``/``target_status``
    attributes of the common error hold their string form.

    Attributes:
        current_step: The step being transitioned from
        target_step: The step that was rejected
        allowed: Steps that are valid targets from ``current_step``
    """

    def __init__(
        self,
        current_step: int,
        target_step: int,
        allowed: set[int] | None = None,
        reason: str | None = None,
    ) -> None:
        self.entity = "setup_step"
        self.current_step = current_step
        self.target_step = target_step
        self.current_status = str(current_step)
        self.target_status = str(target_step)
        self.allowed = allowed

        if reason:
            message = (
                f"cannot move from step {current_step} to step {target_step}: {reason}"
            )
        elif allowed is not None:
            allowed_str = (
                ", ".join(str(s) for s in sorted(allowed)) if allowed else "(none, terminal)"
            )
            message = (
                f"cannot move from step {current_step} to step {target_step}. "
                f"Allowed targets: {allowed_str}"
            )
        else:
            message = f"unknown current step {current_step}"

        DataknobsError.__init__(
            self,
            message,
            context={
                "current_step": current_step,
                "target_step": target_step,
                "allowed": sorted(allowed) if allowed else [],
            },
        )
