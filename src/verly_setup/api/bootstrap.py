"""Chatbot creation plus the concurrent setup calls that follow it.

``create_chatbot_with_inference`` is the single long-running operation
behind step 2. It creates the chatbot row (unless one already exists)
and runs four setup calls concurrently:

- prompt inference
- data-source search
- topic generation
- logo analysis (only when a logo URL is already known)

A failing call does not fail the operation. Its message is recorded in
``BootstrapResult.errors`` under the call's name. Only when every
attempted call fails does the operation raise :class:`ProcessingError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import BackendError, ProcessingError
from ..models import BootstrapResult, ServerChatbotRecord
from .base import SetupBackend

logger = logging.getLogger(__name__)

# Result keys, in wire form
INFER_PROMPT = "inferPrompt"
SEARCH_SOURCES = "searchSources"
GENERATE_TOPICS = "generateTopics"
ANALYZE_IMAGE = "analyzeImage"

_DEFAULT_ERRORS = {
    INFER_PROMPT: "Failed to infer prompt",
    SEARCH_SOURCES: "Failed to search sources",
    GENERATE_TOPICS: "Failed to generate topics",
    ANALYZE_IMAGE: "Failed to analyze image",
}


@dataclass
class ProcessingOutcome:
    """What step-2 processing produced.

    Attributes:
        chatbot_id: The created (or reused) chatbot
        version: Record version after creation
        errors: Non-fatal per-call errors, call name -> message
        inferred_prompt: Inferred system prompt, may be empty
        result: Full aggregated result
        created: False when an existing chatbot was reused
    """

    chatbot_id: str
    version: int
    errors: dict[str, str] = field(default_factory=dict)
    inferred_prompt: str = ""
    result: BootstrapResult = field(default_factory=BootstrapResult)
    created: bool = True


def chatbot_name(host: str) -> str:
    return f"{host} Agent"


def chatbot_description(use_case: str, website_url: str) -> str:
    return f"{use_case} initialized via link setup for {website_url}"


class SetupBootstrapper:
    """Composes the backend calls of step 2.

    Args:
        backend: Backend to call

    Example:
        ```python
        bootstrapper = SetupBootstrapper(backend)
        outcome = await bootstrapper.create_chatbot_with_inference(
            workspace_id="ws-1",
            host="verly.ai",
            website_url="https://verly.ai",
            use_case="sales support",
        )
        for name, message in outcome.errors.items():
            print(f"{name}: {message}")
        ```
    """

    def __init__(self, backend: SetupBackend) -> None:
        self._backend = backend

    async def create_chatbot_with_inference(
        self,
        workspace_id: str,
        host: str,
        website_url: str,
        use_case: str,
        chatbot_id: str | None = None,
        version: int = 0,
        image_url: str | None = None,
        on_created: Callable[[ServerChatbotRecord], Any] | None = None,
    ) -> ProcessingOutcome:
        """Create the chatbot (if needed) and run the setup calls.

        Args:
            workspace_id: Workspace to create the chatbot in
            host: Website host, used for the chatbot name
            website_url: Full website URL
            use_case: Use-case entered on step 1
            chatbot_id: Existing chatbot to reuse instead of creating one;
                its record is rewritten when the website or use-case changed
            version: Record version of the existing chatbot
            image_url: Logo to analyze alongside the other calls
            on_created: Called with the new record right after creation

        Raises:
            BackendError: If the chatbot cannot be created
            ProcessingError: If every setup call failed
        """
        created = chatbot_id is None
        if chatbot_id is None:
            record = await self._backend.create_chatbot(
                workspace_id,
                name=chatbot_name(host),
                description=chatbot_description(use_case, website_url),
                website_url=website_url,
                use_case=use_case,
            )
            chatbot_id = record.id
            version = record.version
            logger.info(
                "Created chatbot %s for %s",
                chatbot_id,
                website_url,
                extra={"chatbot_id": chatbot_id, "workspace_id": workspace_id},
            )
            if on_created is not None:
                on_created(record)
        else:
            logger.info(
                "Reusing chatbot %s for setup",
                chatbot_id,
                extra={"chatbot_id": chatbot_id},
            )
            version = await self._sync_reused(
                workspace_id, chatbot_id, version, host, website_url, use_case
            )

        result = await self.bootstrap(chatbot_id, website_url, use_case, image_url=image_url)
        await self._analyze_logo(chatbot_id, result)

        return ProcessingOutcome(
            chatbot_id=chatbot_id,
            version=version,
            errors=result.reported_errors,
            inferred_prompt=result.system_prompt,
            result=result,
            created=created,
        )

    async def _sync_reused(
        self,
        workspace_id: str,
        chatbot_id: str,
        version: int,
        host: str,
        website_url: str,
        use_case: str,
    ) -> int:
        """Point a reused chatbot at the current input; returns its version."""
        try:
            record = await self._backend.get_chatbot(workspace_id, chatbot_id)
        except BackendError as e:
            logger.warning("Could not check reused chatbot %s: %s", chatbot_id, e)
            return version
        if record.website_url == website_url and record.use_case == use_case:
            return version

        patch = {
            "websiteUrl": website_url,
            "name": chatbot_name(host),
            "description": chatbot_description(use_case, website_url),
            "useCase": use_case,
        }
        updated = await self._backend.update_chatbot(chatbot_id, patch, version=record.version)
        logger.info(
            "Updated reused chatbot %s from %s to %s",
            chatbot_id,
            record.website_url,
            website_url,
            extra={"chatbot_id": chatbot_id, "version": updated.version},
        )
        return updated.version

    async def bootstrap(
        self,
        chatbot_id: str,
        website_url: str,
        use_case: str,
        image_url: str | None = None,
    ) -> BootstrapResult:
        """Run the setup calls concurrently and aggregate their results.

        Raises:
            ProcessingError: If every attempted call failed
        """
        calls: dict[str, Awaitable[Any]] = {
            INFER_PROMPT: self._backend.infer_prompt(chatbot_id, website_url, use_case),
            SEARCH_SOURCES: self._backend.search_sources(chatbot_id, website_url),
            GENERATE_TOPICS: self._backend.generate_topics(chatbot_id, website_url, use_case),
        }
        if image_url:
            calls[ANALYZE_IMAGE] = self._backend.analyze_image(chatbot_id, image_url)

        outcomes = await asyncio.gather(*calls.values(), return_exceptions=True)

        result = BootstrapResult()
        for name, outcome in zip(calls, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                message = str(outcome) or _DEFAULT_ERRORS[name]
                result.errors[name] = message
                logger.warning(
                    "Setup call %s failed for %s: %s",
                    name,
                    chatbot_id,
                    message,
                    extra={"chatbot_id": chatbot_id},
                )
                continue
            if name == INFER_PROMPT:
                result.infer_prompt = outcome
            elif name == SEARCH_SOURCES:
                result.search_sources = list(outcome)
            elif name == GENERATE_TOPICS:
                result.generate_topics = list(outcome)
            else:
                result.analyze_image = outcome

        if len(result.reported_errors) == len(calls):
            raise ProcessingError(
                "All setup requests failed",
                context={"chatbot_id": chatbot_id, "errors": result.reported_errors},
            )
        return result

    async def _analyze_logo(self, chatbot_id: str, result: BootstrapResult) -> None:
        """Analyze the inferred logo once if no analysis ran yet."""
        if result.analyze_image is not None or result.infer_prompt is None:
            return
        logo_url = result.infer_prompt.logo_url
        if not logo_url:
            return
        try:
            result.analyze_image = await self._backend.analyze_image(chatbot_id, logo_url)
        except BackendError as e:
            logger.debug("Logo analysis failed for %s: %s", chatbot_id, e)
