"""Backend protocol for the setup workflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..models import DataSource, ImageAnalysis, InferredPrompt, ServerChatbotRecord


@runtime_checkable
class SetupBackend(Protocol):
    """Protocol for the services the setup wizard talks to.

    Four services are grouped behind one interface:

    - chatbot records (create, fetch, versioned update)
    - setup jobs (prompt inference, source search, topics, logo analysis)
    - channel prompts
    - widget customization

    Implementations:
    - HTTPSetupBackend: REST client over aiohttp
    - InMemorySetupBackend: In-process fake for tests and demos

    Every method is async. Failures are raised as
    :class:`~verly_setup.exceptions.BackendError` subclasses.
    """

    async def initialize(self) -> None:
        """Prepare connections. Should be idempotent."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...

    async def create_chatbot(
        self,
        workspace_id: str,
        name: str,
        description: str,
        website_url: str,
        use_case: str,
    ) -> ServerChatbotRecord:
        """Create a chatbot record in DRAFT status.

        Not idempotent: callers must never retry it blindly.
        """
        ...

    async def get_chatbot(self, workspace_id: str, chatbot_id: str) -> ServerChatbotRecord:
        """Fetch a chatbot record.

        Raises:
            NotFoundError: If the chatbot does not exist in the workspace
        """
        ...

    async def update_chatbot(
        self,
        chatbot_id: str,
        patch: dict[str, Any],
        version: int,
    ) -> ServerChatbotRecord:
        """Apply a partial update written against ``version``.

        Raises:
            VersionConflictError: If ``version`` is not the stored version
        """
        ...

    async def infer_prompt(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> InferredPrompt: ...

    async def search_sources(self, chatbot_id: str, website_url: str) -> list[DataSource]: ...

    async def generate_topics(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> list[str]: ...

    async def analyze_image(self, chatbot_id: str, image_url: str) -> ImageAnalysis: ...

    async def get_channel_prompt(self, chatbot_id: str, channel: str) -> str:
        """Fetch the system prompt of a channel; empty until one exists."""
        ...

    async def upsert_channel_prompt(
        self, chatbot_id: str, channel: str, system_prompt: str
    ) -> None: ...

    async def load_customization(self, chatbot_id: str) -> dict[str, Any]: ...

    async def save_customization(
        self, chatbot_id: str, config: dict[str, Any]
    ) -> dict[str, Any]: ...
