"""HTTP setup backend for the Verly REST API.

Every endpoint answers with an envelope::

    {"success": true, "message": "...", "data": {...}}

The backend unwraps ``data`` and maps failures onto the setup exception
hierarchy:

- 404 -> NotFoundError
- 409 -> VersionConflictError
- 5xx and connection errors -> TransientBackendError
- other 4xx, or ``success: false`` -> BackendError
- client timeout -> BackendTimeoutError
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from dataclasses import replace
from typing import Any

import aiohttp
from dataknobs_common.retry import RetryConfig, RetryExecutor

from ..exceptions import (
    BackendError,
    BackendTimeoutError,
    NotFoundError,
    TransientBackendError,
    VersionConflictError,
)
from ..models import (
    ChatbotStatus,
    DataSource,
    ImageAnalysis,
    InferredPrompt,
    ServerChatbotRecord,
)

logger = logging.getLogger(__name__)


class HTTPSetupBackend:
    """Setup backend that talks to the Verly REST API.

    The expected API contract (relative to ``base_url``) is:
    - POST /chatbot/create - Create a chatbot
    - GET /chatbot/{id}?workspaceId= - Get a chatbot record
    - PATCH /chatbot/{id} - Versioned partial update
    - POST /setup/infer-prompt, /setup/search-sources, /setup/topic,
      /setup/analyze-image - Setup jobs
    - GET /prompts/{id}/channel/{channel} - Channel prompt
    - POST /prompts/channel - Upsert a channel prompt
    - GET /deploy/widget/config?chatbotId= - Widget customization
    - POST /deploy/widget - Save widget customization

    Reads (get chatbot, get prompt, load customization) are retried on
    transient failures. Writes and setup jobs are sent once.

    Args:
        base_url: Base URL of the API
        auth_token: Bearer token for authentication (optional)
        auth_header: Custom auth header name (default: "Authorization")
        timeout: Request timeout in seconds (default: 30)
        verify_ssl: Verify SSL certificates (default: True)
        retry: Retry policy for reads

    Example:
        ```python
        backend = HTTPSetupBackend(
            base_url="https://api.verly.ai/api/v1",
            auth_token="secret-token",
        )
        await backend.initialize()

        record = await backend.get_chatbot("ws-1", "abc123")
        print(record.setup_current_step)

        await backend.close()
        ```
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        auth_header: str = "Authorization",
        timeout: float = 30.0,
        verify_ssl: bool = True,
        retry: RetryConfig | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._auth_header = auth_header
        self._timeout = timeout
        self._verify_ssl = verify_ssl
        self._retry = RetryExecutor(
            replace(
                retry or RetryConfig(initial_delay=0.5, max_delay=10.0),
                retry_on_exceptions=[TransientBackendError],
            )
        )

        self._session: aiohttp.ClientSession | None = None
        self._initialized = False

    @classmethod
    def from_config(
        cls, config: dict[str, Any], retry: RetryConfig | None = None
    ) -> HTTPSetupBackend:
        """Create backend from configuration dictionary.

        Args:
            config: Configuration with keys:
                - base_url (required): API base URL
                - auth_token: Bearer token
                - auth_header: Custom auth header name
                - timeout: Request timeout
                - verify_ssl: SSL verification
            retry: Retry policy for reads

        Returns:
            Configured HTTPSetupBackend instance
        """
        return cls(
            base_url=config["base_url"],
            auth_token=config.get("auth_token"),
            auth_header=config.get("auth_header", "Authorization"),
            timeout=config.get("timeout", 30.0),
            verify_ssl=config.get("verify_ssl", True),
            retry=retry,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def initialize(self) -> None:
        """Create the aiohttp session."""
        if self._initialized:
            return

        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._auth_token:
            headers[self._auth_header] = f"Bearer {self._auth_token}"

        ssl_context: bool | ssl.SSLContext = self._verify_ssl
        if not self._verify_ssl:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        connector = aiohttp.TCPConnector(ssl=ssl_context)
        self._session = aiohttp.ClientSession(
            headers=headers,
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        )
        self._initialized = True
        logger.info("HTTPSetupBackend initialized: %s", self._base_url)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        self._initialized = False
        logger.info("HTTPSetupBackend closed")

    def _ensure_initialized(self) -> aiohttp.ClientSession:
        if not self._initialized or self._session is None:
            raise RuntimeError("HTTPSetupBackend not initialized. Call initialize() first.")
        return self._session

    # -- Request plumbing --

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
        not_found: tuple[str, str] | None = None,
        version: int | None = None,
    ) -> Any:
        session = self._ensure_initialized()
        url = f"{self._base_url}{path}"
        try:
            async with session.request(method, url, params=params, json=payload) as response:
                return await self._unwrap(response, operation, not_found, version)
        except asyncio.TimeoutError as e:
            logger.warning("%s timed out after %ss", operation, self._timeout)
            raise BackendTimeoutError(operation, self._timeout) from e
        except aiohttp.ClientError as e:
            logger.warning("%s failed: %s", operation, e)
            raise TransientBackendError(
                f"{operation} failed: {e}", context={"operation": operation}
            ) from e

    async def _read(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        return await self._retry.execute(self._request, method, path, operation, **kwargs)

    async def _unwrap(
        self,
        response: aiohttp.ClientResponse,
        operation: str,
        not_found: tuple[str, str] | None,
        version: int | None,
    ) -> Any:
        text = await response.text()
        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {"message": text}
        message = body.get("message") if isinstance(body, dict) else None
        status = response.status

        if status == 404:
            resource, resource_id = not_found or ("resource", str(response.url))
            raise NotFoundError(resource, resource_id)
        if status == 409 and not_found is not None and version is not None:
            actual = None
            data = body.get("data") if isinstance(body, dict) else None
            if isinstance(data, dict) and "version" in data:
                actual = int(data["version"])
            raise VersionConflictError(not_found[1], version, actual)
        if status >= 500:
            logger.error("%s failed: HTTP %s: %s", operation, status, message or text)
            raise TransientBackendError(
                message or f"{operation} failed with HTTP {status}",
                status_code=status,
                context={"operation": operation},
            )
        if status >= 400:
            logger.error("%s failed: HTTP %s: %s", operation, status, message or text)
            raise BackendError(
                message or f"{operation} failed with HTTP {status}",
                status_code=status,
                context={"operation": operation},
            )
        if isinstance(body, dict):
            if body.get("success") is False:
                raise BackendError(
                    message or f"{operation} failed",
                    status_code=status,
                    context={"operation": operation},
                )
            if "data" in body:
                return body["data"]
        return body

    # -- Chatbot records --

    async def create_chatbot(
        self,
        workspace_id: str,
        name: str,
        description: str,
        website_url: str,
        use_case: str,
    ) -> ServerChatbotRecord:
        data = await self._request(
            "POST",
            "/chatbot/create",
            "create chatbot",
            payload={
                "workspaceId": workspace_id,
                "name": name,
                "description": description,
                "websiteUrl": website_url,
                "useCase": use_case,
                "status": ChatbotStatus.DRAFT.value,
            },
        )
        record = ServerChatbotRecord.from_dict({"workspaceId": workspace_id, **_mapping(data)})
        logger.info("Created chatbot %s", record.id, extra={"chatbot_id": record.id})
        return record

    async def get_chatbot(self, workspace_id: str, chatbot_id: str) -> ServerChatbotRecord:
        data = await self._read(
            "GET",
            f"/chatbot/{chatbot_id}",
            "get chatbot",
            params={"workspaceId": workspace_id},
            not_found=("chatbot", chatbot_id),
        )
        return ServerChatbotRecord.from_dict(
            {"id": chatbot_id, "workspaceId": workspace_id, **_mapping(data)}
        )

    async def update_chatbot(
        self,
        chatbot_id: str,
        patch: dict[str, Any],
        version: int,
    ) -> ServerChatbotRecord:
        data = await self._request(
            "PATCH",
            f"/chatbot/{chatbot_id}",
            "update chatbot",
            payload={**patch, "version": version},
            not_found=("chatbot", chatbot_id),
            version=version,
        )
        return ServerChatbotRecord.from_dict({"id": chatbot_id, **_mapping(data)})

    # -- Setup jobs --

    async def infer_prompt(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> InferredPrompt:
        data = await self._request(
            "POST",
            "/setup/infer-prompt",
            "infer prompt",
            payload={"chatbotId": chatbot_id, "websiteUrl": website_url, "useCase": use_case},
        )
        return InferredPrompt.from_dict(_mapping(data))

    async def search_sources(self, chatbot_id: str, website_url: str) -> list[DataSource]:
        data = await self._request(
            "POST",
            "/setup/search-sources",
            "search sources",
            payload={"chatbotId": chatbot_id, "websiteUrl": website_url},
        )
        return [DataSource.from_api(item) for item in _items(data, "data", "sources")]

    async def generate_topics(
        self, chatbot_id: str, website_url: str, use_case: str
    ) -> list[str]:
        data = await self._request(
            "POST",
            "/setup/topic",
            "generate topics",
            payload={"chatbotId": chatbot_id, "websiteUrl": website_url, "useCase": use_case},
        )
        topics: list[str] = []
        for item in _items(data, "topics", "data"):
            if isinstance(item, dict):
                label = item.get("name") or item.get("title") or item.get("topic")
                if label:
                    topics.append(str(label))
            elif item:
                topics.append(str(item))
        return topics

    async def analyze_image(self, chatbot_id: str, image_url: str) -> ImageAnalysis:
        data = await self._request(
            "POST",
            "/setup/analyze-image",
            "analyze image",
            payload={"chatbotId": chatbot_id, "imageUrl": image_url},
        )
        return ImageAnalysis.from_dict(_mapping(data))

    # -- Prompts --

    async def get_channel_prompt(self, chatbot_id: str, channel: str) -> str:
        data = await self._read(
            "GET",
            f"/prompts/{chatbot_id}/channel/{channel}",
            "get channel prompt",
        )
        if isinstance(data, str):
            return data
        mapping = _mapping(data)
        return str(mapping.get("systemPrompt") or mapping.get("system_prompt") or "")

    async def upsert_channel_prompt(
        self, chatbot_id: str, channel: str, system_prompt: str
    ) -> None:
        await self._request(
            "POST",
            "/prompts/channel",
            "save channel prompt",
            payload={"chatbotId": chatbot_id, "channel": channel, "systemPrompt": system_prompt},
        )

    # -- Customization --

    async def load_customization(self, chatbot_id: str) -> dict[str, Any]:
        data = await self._read(
            "GET",
            "/deploy/widget/config",
            "load customization",
            params={"chatbotId": chatbot_id},
        )
        mapping = _mapping(data)
        nested = mapping.get("partial") or mapping.get("config")
        return dict(nested) if isinstance(nested, dict) else mapping

    async def save_customization(
        self, chatbot_id: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/deploy/widget",
            "save customization",
            payload={"chatbotId": chatbot_id, "partial": config},
        )
        return _mapping(data) or dict(config)


def _mapping(data: Any) -> dict[str, Any]:
    return dict(data) if isinstance(data, dict) else {}


def _items(data: Any, *keys: str) -> list[Any]:
    """Return ``data`` as a list, looking inside ``keys`` when it is a dict."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []
