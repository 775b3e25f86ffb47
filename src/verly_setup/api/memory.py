"""In-memory implementation of SetupBackend."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from ..exceptions import BackendError, NotFoundError, VersionConflictError
from ..models import (
    ChatbotStatus,
    DataSource,
    ImageAnalysis,
    InferredPrompt,
    ServerChatbotRecord,
    StepStatus,
)
from ..validation import split_url

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TEMPLATE = "You are a helpful assistant for {host}. Focus on: {use_case}."


class InMemorySetupBackend:
    """In-memory implementation of SetupBackend.

    Simple dict-based fake suitable for:
    - Testing controllers without a network
    - Demos and local development

    It behaves like the real service where the wizard depends on it:
    - Record writes require the current ``version`` and bump it
    - Prompt inference records step 3 on the chatbot (bumping the version)
    - The inferred prompt can be made readable only after a number of
      fetches, imitating background generation
    - Any operation can be made to fail with :meth:`fail`

    Every call is recorded in :attr:`calls` as ``(operation, kwargs)``.

    Args:
        latency: Seconds every call sleeps before answering
        prompt_delay_fetches: Channel-prompt fetches that return an empty
            prompt after inference, before the prompt becomes readable
        prompt_template: Template for inferred prompts (``{host}``,
            ``{use_case}``, ``{website_url}``)
        logo_url: Logo URL reported by inference (None for no logo)
        primary_color: Colour reported by logo analysis
        topics: Topics reported by topic generation
        sources: Raw data-source items reported by source search
        return_prompt: Whether inference returns the prompt in its response;
            when False the prompt is only readable through the channel

    Example:
        ```python
        backend = InMemorySetupBackend(prompt_delay_fetches=2)
        await backend.initialize()

        record = await backend.create_chatbot(
            "ws-1", "verly.ai Agent", "...", "https://verly.ai", "sales support"
        )
        await backend.infer_prompt(record.id, "https://verly.ai", "sales support")
        await backend.get_channel_prompt(record.id, "WIDGET")  # ""
        await backend.get_channel_prompt(record.id, "WIDGET")  # ""
        await backend.get_channel_prompt(record.id, "WIDGET")  # the prompt
        ```
    """

    def __init__(
        self,
        latency: float = 0.0,
        prompt_delay_fetches: int = 0,
        prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
        logo_url: str | None = None,
        primary_color: str | None = None,
        topics: list[str] | None = None,
        sources: list[dict[str, Any]] | None = None,
        return_prompt: bool = True,
    ) -> None:
        self._latency = latency
        self._prompt_delay_fetches = prompt_delay_fetches
        self._prompt_template = prompt_template
        self._return_prompt = return_prompt
        self._logo_url = logo_url
        self._primary_color = primary_color
        self._topics = list(topics) if topics is not None else ["Pricing", "Onboarding", "Support"]
        self._sources = (
            list(sources)
            if sources is not None
            else [{"id": "src-1", "type": "website", "name": "Homepage"}]
        )

        self._records: dict[str, ServerChatbotRecord] = {}
        self._prompts: dict[tuple[str, str], str] = {}
        self._pending_prompts: dict[tuple[str, str], tuple[str, int]] = {}
        self._customizations: dict[str, dict[str, Any]] = {}
        self._failures: dict[str, tuple[BaseException, int | None]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> InMemorySetupBackend:
        """Create from a configuration dictionary of constructor arguments."""
        return cls(
            latency=float(config.get("latency", 0.0)),
            prompt_delay_fetches=int(config.get("prompt_delay_fetches", 0)),
            prompt_template=config.get("prompt_template", DEFAULT_PROMPT_TEMPLATE),
            logo_url=config.get("logo_url"),
            primary_color=config.get("primary_color"),
            topics=config.get("topics"),
            sources=config.get("sources"),
            return_prompt=bool(config.get("return_prompt", True)),
        )

    async def initialize(self) -> None:
        """Initialize the backend (no-op for in-memory)."""
        self._initialized = True

    async def close(self) -> None:
        self._initialized = False

    # -- Test helpers --

    def fail(
        self,
        operation: str,
        error: BaseException | str | None = None,
        times: int | None = None,
    ) -> None:
        """Make ``operation`` raise.

        Args:
            operation: Method name, e.g. ``"infer_prompt"``
            error: Exception to raise, or a message for a BackendError
            times: Number of calls that fail; None fails until :meth:`recover`
        """
        if error is None:
            error = f"{operation} failed"
        if isinstance(error, str):
            error = BackendError(error, status_code=500)
        self._failures[operation] = (error, times)

    def recover(self, operation: str | None = None) -> None:
        """Stop failing ``operation`` (or every operation)."""
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def seed(self, record: ServerChatbotRecord, prompt: str | None = None, channel: str = "WIDGET") -> None:
        """Store a record (and optionally its channel prompt) directly."""
        self._records[record.id] = record
        if prompt is not None:
            self._prompts[(record.id, channel)] = prompt

    def record(self, chatbot_id: str) -> ServerChatbotRecord | None:
        return self._records.get(chatbot_id)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    @property
    def chatbot_count(self) -> int:
        return len(self._records)

    async def _enter(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        failure = self._failures.get(operation)
        if failure is None:
            return
        error, remaining = failure
        if remaining is not None:
            if remaining <= 1:
                del self._failures[operation]
            else:
                self._failures[operation] = (error, remaining - 1)
        logger.debug("Injected failure for %s: %s", operation, error)
        raise error

    # -- Chatbot records --

    async def create_chatbot(
        self,
        workspace_id: str,
        name: str,
        description: str,
        website_url: str,
        use_case: str,
    ) -> ServerChatbotRecord:
        await self._enter(
            "create_chatbot",
            workspace_id=workspace_id,
            name=name,
            description=description,
            website_url=website_url,
            use_case=use_case,
        )
        async with self._lock:
            chatbot_id = uuid.uuid4().hex[:12]
            record = ServerChatbotRecord(
                id=chatbot_id,
                workspace_id=workspace_id,
                website_url=website_url,
                setup_current_step=2,
                setup_step_statuses={
                    1: StepStatus.COMPLETED,
                    2: StepStatus.IN_PROGRESS,
                },
                status=ChatbotStatus.DRAFT,
                version=1,
                name=name,
                description=description,
                use_case=use_case,
            )
            self._records[chatbot_id] = record
        logger.debug("Created chatbot %s in workspace %s", chatbot_id, workspace_id)
        return record

    async def get_chatbot(self, workspace_id: str, chatbot_id: str) -> ServerChatbotRecord:
        await self._enter("get_chatbot", workspace_id=workspace_id, chatbot_id=chatbot_id)
        record = self._records.get(chatbot_id)
        if record is None or record.workspace_id != workspace_id:
            raise NotFoundError("chatbot", chatbot_id)
        return record

    async def update_chatbot(
        self,
        chatbot_id: str,
        patch: dict[str, Any],
        version: int,
    ) -> ServerChatbotRecord:
        await self._enter("update_chatbot", chatbot_id=chatbot_id, patch=dict(patch), version=version)
        async with self._lock:
            return self._apply_patch(chatbot_id, patch, version)

    def _apply_patch(
        self, chatbot_id: str, patch: dict[str, Any], version: int
    ) -> ServerChatbotRecord:
        record = self._records.get(chatbot_id)
        if record is None:
            raise NotFoundError("chatbot", chatbot_id)
        if version != record.version:
            raise VersionConflictError(chatbot_id, version, record.version)
        data = record.to_dict()
        data.update(patch)
        data["version"] = record.version + 1
        updated = ServerChatbotRecord.from_dict(data)
        self._records[chatbot_id] = updated
        return updated

    # -- Setup jobs --

    async def infer_prompt(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> InferredPrompt:
        await self._enter(
            "infer_prompt", chatbot_id=chatbot_id, website_url=website_url, use_case=use_case
        )
        _, host = split_url(website_url)
        prompt = self._prompt_template.format(
            host=host, use_case=use_case, website_url=website_url
        )
        async with self._lock:
            key = (chatbot_id, "WIDGET")
            if self._prompt_delay_fetches > 0:
                self._pending_prompts[key] = (prompt, self._prompt_delay_fetches)
            else:
                self._prompts[key] = prompt
            record = self._records.get(chatbot_id)
            if record is not None and record.setup_current_step < 3:
                statuses = {str(k): v.value for k, v in record.setup_step_statuses.items()}
                statuses["2"] = StepStatus.COMPLETED.value
                self._apply_patch(
                    chatbot_id,
                    {"setupCurrentStep": 3, "setupStepStatuses": statuses},
                    record.version,
                )
        return InferredPrompt(
            system_prompt=prompt if self._return_prompt else "",
            name=host.split(".")[0].capitalize() if host else None,
            logo_url=self._logo_url,
        )

    async def search_sources(self, chatbot_id: str, website_url: str) -> list[DataSource]:
        await self._enter("search_sources", chatbot_id=chatbot_id, website_url=website_url)
        return [DataSource.from_api(item) for item in self._sources]

    async def generate_topics(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> list[str]:
        await self._enter(
            "generate_topics", chatbot_id=chatbot_id, website_url=website_url, use_case=use_case
        )
        return list(self._topics)

    async def analyze_image(self, chatbot_id: str, image_url: str) -> ImageAnalysis:
        await self._enter("analyze_image", chatbot_id=chatbot_id, image_url=image_url)
        return ImageAnalysis(primary_color=self._primary_color)

    # -- Prompts --

    async def get_channel_prompt(self, chatbot_id: str, channel: str) -> str:
        await self._enter("get_channel_prompt", chatbot_id=chatbot_id, channel=channel)
        key = (chatbot_id, channel)
        async with self._lock:
            pending = self._pending_prompts.get(key)
            if pending is not None:
                prompt, remaining = pending
                if remaining <= 0:
                    del self._pending_prompts[key]
                    self._prompts[key] = prompt
                else:
                    self._pending_prompts[key] = (prompt, remaining - 1)
            return self._prompts.get(key, "")

    async def upsert_channel_prompt(
        self, chatbot_id: str, channel: str, system_prompt: str
    ) -> None:
        await self._enter(
            "upsert_channel_prompt",
            chatbot_id=chatbot_id,
            channel=channel,
            system_prompt=system_prompt,
        )
        async with self._lock:
            self._pending_prompts.pop((chatbot_id, channel), None)
            self._prompts[(chatbot_id, channel)] = system_prompt

    # -- Customization --

    async def load_customization(self, chatbot_id: str) -> dict[str, Any]:
        await self._enter("load_customization", chatbot_id=chatbot_id)
        return dict(self._customizations.get(chatbot_id, {}))

    async def save_customization(
        self, chatbot_id: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        await self._enter("save_customization", chatbot_id=chatbot_id, config=dict(config))
        async with self._lock:
            merged = {**self._customizations.get(chatbot_id, {}), **config}
            self._customizations[chatbot_id] = merged
        return dict(merged)
