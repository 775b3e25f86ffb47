"""Marks a chatbot's setup as completed when the wizard reaches step 7."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .api.base import SetupBackend
from .cache import SetupCache
from .effects import CancellationToken
from .events import ToastLevel, UiEmitter
from .exceptions import BackendError, PersistenceError, VersionConflictError
from .models import (
    TERMINAL_STEP,
    ChatbotStatus,
    ServerChatbotRecord,
    StepStatus,
    utc_now,
)
from .session import SetupSession

logger = logging.getLogger(__name__)

COMPLETION_FAILED_MESSAGE = "Setup finished, but its completion could not be saved"


def completion_patch(completed_at: datetime) -> dict[str, Any]:
    """The wire patch that records a finished wizard."""
    return {
        "setupCompletedAt": completed_at.isoformat(),
        "setupCurrentStep": TERMINAL_STEP,
        "setupStepStatuses": {
            str(step): StepStatus.COMPLETED.value for step in range(1, TERMINAL_STEP)
        },
        "status": ChatbotStatus.ACTIVE.value,
    }


class CompletionFinalizer:
    """Writes the completion state once per terminal-step entry.

    The write is a single versioned PATCH and is never retried. A failure
    is logged; the completion screen is shown either way. The setup cache
    entry is removed only after the write succeeds, so a failed write
    leaves it in place for a later resume.

    Args:
        backend: Backend holding the chatbot record
        cache: Setup cache to clear on success
        emitter: Destination of the optional failure toast
        surface_errors: Show a warning toast when the write fails
        clock: Source of the completion timestamp
    """

    def __init__(
        self,
        backend: SetupBackend,
        cache: SetupCache,
        emitter: UiEmitter | None = None,
        surface_errors: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._emitter = emitter
        self._surface_errors = surface_errors
        self._clock = clock

    async def finalize(
        self, session: SetupSession, token: CancellationToken | None = None
    ) -> ServerChatbotRecord | None:
        """Record completion for ``session``.

        Args:
            session: Session on the terminal step
            token: Cancelled when the wizard is left or reset; nothing is
                written after that, and a failed write started before it
                is not surfaced

        Returns:
            The updated record, or None if nothing was written
        """
        if session.step != TERMINAL_STEP or not session.chatbot_id:
            return None
        if token is not None and token.cancelled:
            return None
        chatbot_id = session.chatbot_id

        try:
            record = await self._write(chatbot_id, session.version)
        except PersistenceError as e:
            logger.warning(
                "Could not mark setup of %s completed: %s",
                chatbot_id,
                e,
                extra={"chatbot_id": chatbot_id, **e.context},
            )
            cancelled = token is not None and token.cancelled
            if self._surface_errors and self._emitter is not None and not cancelled:
                await self._emitter.toast(ToastLevel.WARNING, COMPLETION_FAILED_MESSAGE)
            return None

        self._cache.clear(chatbot_id)
        logger.info(
            "Setup of %s completed",
            chatbot_id,
            extra={"chatbot_id": chatbot_id, "step": TERMINAL_STEP},
        )
        return record

    async def _write(self, chatbot_id: str, version: int) -> ServerChatbotRecord:
        patch = completion_patch(self._clock())
        try:
            return await self._backend.update_chatbot(chatbot_id, patch, version=version)
        except VersionConflictError as e:
            raise PersistenceError(
                f"Stale version {version} for chatbot {chatbot_id}",
                context={"version": version, "actual_version": e.actual_version},
            ) from e
        except BackendError as e:
            raise PersistenceError(
                f"Completion write failed: {e}",
                context={"version": version, "status_code": e.status_code},
            ) from e
