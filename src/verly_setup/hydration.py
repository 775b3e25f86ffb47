"""Resume a setup session from the server's chatbot record.

When the wizard is opened with a resume id, the server record decides
where the user lands; the local cache only fills in the inferred prompt
early so the resumed step has something to show before the
authoritative prompt arrives.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .api.base import SetupBackend
from .cache import SetupCache
from .effects import CancellationToken
from .events import ToastLevel, UiEmitter
from .exceptions import BackendError, NotFoundError
from .models import FIRST_STEP, PROCESSING_STEP, WIDGET_CHANNEL, ServerChatbotRecord
from .session import HydrateFromServer, PromptLoaded, SetupStore, resume_step

logger = logging.getLogger(__name__)

RESUME_NOT_FOUND_MESSAGE = "Could not find the chatbot to resume"
RESUME_FAILED_MESSAGE = "Could not load the chatbot to resume"


class ResumeHydrator:
    """Reconciles a pristine session with the server record.

    Args:
        backend: Backend to fetch the record and prompt from
        cache: Local setup cache
        emitter: Destination of error toasts
        channel: Prompt channel to fetch
    """

    def __init__(
        self,
        backend: SetupBackend,
        cache: SetupCache,
        emitter: UiEmitter,
        channel: str = WIDGET_CHANNEL,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._emitter = emitter
        self._channel = channel

    async def run(
        self,
        store: SetupStore,
        resume_id: str,
        token: CancellationToken,
        on_record: Callable[[ServerChatbotRecord], Any] | None = None,
    ) -> ServerChatbotRecord | None:
        """Hydrate ``store`` from the record ``resume_id``.

        Only a session still on step 1 is hydrated. ``on_record`` is called
        with the fetched record just before the session changes.

        Returns:
            The record, or None when nothing was hydrated
        """
        session = store.session
        if session.step != FIRST_STEP:
            logger.debug("Skipping resume of %s: session already on step %s", resume_id, session.step)
            return None

        try:
            record = await self._backend.get_chatbot(session.workspace_id, resume_id)
        except BackendError as e:
            if token.cancelled:
                return None
            logger.warning("Could not resume chatbot %s: %s", resume_id, e)
            message = RESUME_NOT_FOUND_MESSAGE if isinstance(e, NotFoundError) else RESUME_FAILED_MESSAGE
            await self._emitter.toast(ToastLevel.ERROR, message)
            return None

        if token.cancelled or store.session.step != FIRST_STEP:
            return None

        target = resume_step(record)
        cached_prompt = None
        if target > PROCESSING_STEP:
            entry = self._cache.load(record.id)
            if entry is not None:
                cached_prompt = entry.result.system_prompt or None

        if on_record is not None:
            on_record(record)
        store.dispatch(HydrateFromServer(record, cached_prompt=cached_prompt))
        logger.info(
            "Resumed chatbot %s at step %s (server step %s, cached prompt: %s)",
            record.id,
            target,
            record.setup_current_step,
            cached_prompt is not None,
            extra={"chatbot_id": record.id, "step": target},
        )

        if target > PROCESSING_STEP:
            await self._load_prompt(store, record.id, token)
        return record

    async def _load_prompt(self, store: SetupStore, chatbot_id: str, token: CancellationToken) -> None:
        try:
            prompt = await self._backend.get_channel_prompt(chatbot_id, self._channel)
        except BackendError as e:
            logger.warning("Could not fetch prompt for %s: %s", chatbot_id, e)
            return
        if token.cancelled or store.session.chatbot_id != chatbot_id:
            return
        if prompt.strip():
            store.dispatch(PromptLoaded(prompt))
