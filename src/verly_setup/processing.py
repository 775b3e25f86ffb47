"""Step-2 processing: validate, create the chatbot, run the setup calls.

The orchestrator owns the one long-running backend job of the wizard. It
validates the step-1 input without touching the network, then runs
:meth:`SetupBootstrapper.create_chatbot_with_inference` under an overall
timeout. Per-call errors are shown but do not block advancing (soft
failure). An exception from the job sends the session back to step 1 with
its inputs intact (hard failure).

Once the chatbot exists its id is written into the session immediately,
so a retry after a later failure reuses it instead of creating another.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .api.base import SetupBackend
from .api.bootstrap import ProcessingOutcome, SetupBootstrapper
from .cache import SetupCache
from .effects import CancellationToken
from .events import CHATBOTS_QUERY, ToastLevel, UiEmitter
from .exceptions import BackendError, ProcessingError, ValidationError
from .models import PROCESSING_STEP, BootstrapResult, ServerChatbotRecord
from .session import (
    ChatbotCreated,
    ProcessingFailed,
    ProcessingStarted,
    ProcessingSucceeded,
    SetupSession,
    SetupStore,
)
from .validation import compose_url, validate_host

logger = logging.getLogger(__name__)

SETUP_COMPLETE_MESSAGE = "Initial setup complete"
MISSING_WORKSPACE_MESSAGE = "Workspace is required"

DEFAULT_PRIMARY_COLOR = "#0e4b75"
DEFAULT_DISPLAY_NAME = "Support Bot"

DEFAULT_CUSTOMIZATION: dict[str, Any] = {
    "DisplayName": DEFAULT_DISPLAY_NAME,
    "InitialMessage": "Hi! How can I help you today?",
    "starterQuestions": [],
    "messagePlaceholder": "Message...",
    "keepShowingSuggested": False,
    "collectFeedback": False,
    "allowRegenerate": True,
    "autoShowInitial": False,
    "autoShowDelaySec": 3,
    "widgetEnabled": True,
    "primaryColor": DEFAULT_PRIMARY_COLOR,
    "widgetBubbleColour": DEFAULT_PRIMARY_COLOR,
    "PrimaryIcon": "",
    "widgeticon": "chat",
    "buttonAlignment": "right",
    "showButtonText": False,
    "buttonText": "Chat with us",
    "appearance": "light",
    "chatWidth": "350px",
    "chatHeight": "500px",
    "displayStyle": "corner",
}


def apply_branding(
    customization: dict[str, Any] | None, result: BootstrapResult
) -> dict[str, Any]:
    """Apply the name, logo and colour suggestions of ``result``.

    Suggestions win over the existing draft, which wins over the defaults.
    """
    draft = dict(customization) if customization else dict(DEFAULT_CUSTOMIZATION)
    inferred = result.infer_prompt
    analysis = result.analyze_image

    primary_color = (
        (analysis.primary_color if analysis else None)
        or draft.get("primaryColor")
        or DEFAULT_PRIMARY_COLOR
    )
    display_name = (
        (inferred.name if inferred else None)
        or draft.get("DisplayName")
        or DEFAULT_DISPLAY_NAME
    )
    primary_icon = (inferred.logo_url if inferred else None) or draft.get("PrimaryIcon") or ""

    draft.update(
        DisplayName=display_name,
        PrimaryIcon=primary_icon,
        primaryColor=primary_color,
        widgetBubbleColour=primary_color,
    )
    return draft


class ProcessingOrchestrator:
    """Runs step-2 processing against a session store.

    Args:
        backend: Backend for the chatbot and setup services
        cache: Cache that receives the successful result
        emitter: Destination of toasts and query invalidations
        timeout: Upper bound in seconds for the whole job
    """

    def __init__(
        self,
        backend: SetupBackend,
        cache: SetupCache,
        emitter: UiEmitter,
        timeout: float = 120.0,
    ) -> None:
        self._backend = backend
        self._bootstrapper = SetupBootstrapper(backend)
        self._cache = cache
        self._emitter = emitter
        self._timeout = timeout

    async def run(self, store: SetupStore, token: CancellationToken) -> ProcessingOutcome | None:
        """Process the session's input.

        Returns:
            The outcome on success, None on failure or cancellation
        """
        session = store.session
        if session.step != PROCESSING_STEP or session.is_submitting:
            return None

        try:
            host = validate_host(session.host)
            if not session.workspace_id:
                raise ValidationError(MISSING_WORKSPACE_MESSAGE)
        except ValidationError as e:
            logger.info("Setup input rejected: %s", e)
            store.dispatch(ProcessingFailed(str(e)))
            await self._emitter.toast(ToastLevel.ERROR, str(e))
            return None

        if token.cancelled:
            return None
        store.dispatch(ProcessingStarted())

        def on_created(record: ServerChatbotRecord) -> None:
            if not token.cancelled:
                store.dispatch(ChatbotCreated(record.id, record.version))

        try:
            outcome, customization = await asyncio.wait_for(
                self._process(session, host, on_created),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(
                store, token, f"Setup timed out after {self._timeout:g}s"
            )
        except (BackendError, ProcessingError) as e:
            return await self._fail(store, token, str(e) or "Setup failed")

        if token.cancelled:
            return None

        store.dispatch(
            ProcessingSucceeded(
                chatbot_id=outcome.chatbot_id,
                version=outcome.version,
                inferred_prompt=outcome.inferred_prompt,
                errors=outcome.errors,
                data_sources=tuple(outcome.result.search_sources or ()),
                topics=tuple(outcome.result.generate_topics or ()),
                customization=customization,
            )
        )
        for key, message in outcome.errors.items():
            await self._emitter.toast(ToastLevel.ERROR, f"{key}: {message}")
        await self._emitter.invalidate(CHATBOTS_QUERY, workspace_id=session.workspace_id)
        await self._emitter.toast(ToastLevel.SUCCESS, SETUP_COMPLETE_MESSAGE)
        return outcome

    async def _process(
        self,
        session: SetupSession,
        host: str,
        on_created: Any,
    ) -> tuple[ProcessingOutcome, dict[str, Any]]:
        website_url = compose_url(session.protocol, host)
        outcome = await self._bootstrapper.create_chatbot_with_inference(
            workspace_id=session.workspace_id,
            host=host,
            website_url=website_url,
            use_case=session.use_case,
            chatbot_id=session.chatbot_id,
            version=session.version,
            on_created=on_created,
        )
        chatbot_id = outcome.chatbot_id

        try:
            loaded = await self._backend.load_customization(chatbot_id)
        except BackendError as e:
            logger.debug("Could not load customization for %s: %s", chatbot_id, e)
            loaded = {}
        customization = apply_branding(loaded or session.customization, outcome.result)

        # Setup calls may have advanced the record
        try:
            record = await self._backend.get_chatbot(session.workspace_id, chatbot_id)
            outcome.version = record.version
        except BackendError as e:
            logger.warning("Could not refresh chatbot %s after setup: %s", chatbot_id, e)

        self._cache.save(chatbot_id, outcome.result)
        logger.info(
            "Processing finished for %s with %d soft error(s)",
            chatbot_id,
            len(outcome.errors),
            extra={"chatbot_id": chatbot_id},
        )
        return outcome, customization

    async def _fail(self, store: SetupStore, token: CancellationToken, message: str) -> None:
        if token.cancelled:
            return None
        logger.warning("Processing failed: %s", message)
        store.dispatch(ProcessingFailed(message))
        await self._emitter.toast(ToastLevel.ERROR, message)
        return None
