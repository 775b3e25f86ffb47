"""Data model for the setup workflow.

Server records travel as camelCase JSON; the dataclasses here use
snake_case and convert at the edges via ``to_dict()`` / ``from_dict()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

FIRST_STEP = 1
PROCESSING_STEP = 2
DATA_SOURCES_STEP = 3
UI_CONFIG_STEP = 4
TOPICS_STEP = 5
PROMPT_STEP = 6
TERMINAL_STEP = 7
STEPS = tuple(range(FIRST_STEP, TERMINAL_STEP + 1))

WIDGET_CHANNEL = "WIDGET"


class ChatbotStatus(Enum):
    """Lifecycle status of a chatbot record: DRAFT -> TRAINING -> ACTIVE | INACTIVE."""

    DRAFT = "DRAFT"
    TRAINING = "TRAINING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class StepStatus(Enum):
    """Per-step progress recorded on the server."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 value (``Z`` suffix allowed) into a datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _parse_step_statuses(raw: Any) -> dict[int, StepStatus]:
    statuses: dict[int, StepStatus] = {}
    if not isinstance(raw, dict):
        return statuses
    for key, value in raw.items():
        try:
            step = int(key)
            statuses[step] = StepStatus(value)
        except (TypeError, ValueError):
            # Unknown statuses from newer servers are ignored
            continue
    return statuses


@dataclass
class ServerChatbotRecord:
    """Authoritative chatbot record persisted by the backend.

    Attributes:
        id: Chatbot identifier
        workspace_id: Owning workspace
        website_url: Website the chatbot was created from (None if unknown)
        setup_current_step: Furthest setup step the server has recorded
        setup_step_statuses: Step number -> status
        setup_completed_at: When the setup wizard was finished
        status: Chatbot lifecycle status
        version: Optimistic-concurrency counter, required on every write
        name: Display name
        description: Free-form description
        use_case: Use-case entered on step 1
    """

    id: str
    workspace_id: str
    website_url: str | None = None
    setup_current_step: int = FIRST_STEP
    setup_step_statuses: dict[int, StepStatus] = field(default_factory=dict)
    setup_completed_at: datetime | None = None
    status: ChatbotStatus = ChatbotStatus.DRAFT
    version: int = 1
    name: str = ""
    description: str = ""
    use_case: str | None = None

    @property
    def is_completed(self) -> bool:
        """Whether the setup wizard has been finished for this chatbot."""
        return self.setup_completed_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire representation."""
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "websiteUrl": self.website_url,
            "setupCurrentStep": self.setup_current_step,
            "setupStepStatuses": {
                str(step): status.value
                for step, status in sorted(self.setup_step_statuses.items())
            },
            "setupCompletedAt": (
                self.setup_completed_at.isoformat() if self.setup_completed_at else None
            ),
            "status": self.status.value,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "useCase": self.use_case,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerChatbotRecord:
        """Create from a wire dictionary.

        Accepts both camelCase keys and snake_case keys.

        Args:
            data: Record dictionary from the API

        Returns:
            ServerChatbotRecord instance
        """

        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        status_raw = data.get("status") or ChatbotStatus.DRAFT.value
        try:
            status = ChatbotStatus(status_raw)
        except ValueError:
            status = ChatbotStatus.DRAFT

        return cls(
            id=str(data["id"]),
            workspace_id=str(pick("workspaceId", "workspace_id", "")),
            website_url=pick("websiteUrl", "website_url") or None,
            setup_current_step=int(pick("setupCurrentStep", "setup_current_step", FIRST_STEP) or FIRST_STEP),
            setup_step_statuses=_parse_step_statuses(
                pick("setupStepStatuses", "setup_step_statuses", {})
            ),
            setup_completed_at=parse_datetime(pick("setupCompletedAt", "setup_completed_at")),
            status=status,
            version=int(data.get("version", 1)),
            name=data.get("name") or "",
            description=data.get("description") or "",
            use_case=pick("useCase", "use_case"),
        )

    def __repr__(self) -> str:
        return (
            f"ServerChatbotRecord(id={self.id!r}, step={self.setup_current_step}, "
            f"status={self.status.value}, version={self.version})"
        )


@dataclass(frozen=True)
class DataSource:
    """A knowledge source suggested for the chatbot.

    Attributes:
        id: Source identifier
        type: One of ``url``, ``file`` or ``text``
        name: Display name
        created_at: ISO timestamp, if known
    """

    id: str
    type: str
    name: str
    created_at: str | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> DataSource:
        """Map a raw data-source item onto the three display types."""
        raw_type = str(item.get("type") or "").lower()
        if "url" in raw_type or "website" in raw_type or raw_type == "web":
            kind = "url"
        elif "doc" in raw_type or "file" in raw_type:
            kind = "file"
        else:
            kind = "text"
        created = parse_datetime(item.get("createdAt") or item.get("created_at"))
        return cls(
            id=str(item.get("id", "")),
            type=kind,
            name=str(item.get("name") or ""),
            created_at=created.isoformat() if created else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "createdAt": self.created_at,
        }


@dataclass
class InferredPrompt:
    """Result of AI prompt inference for a website."""

    system_prompt: str = ""
    name: str | None = None
    logo_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "systemPrompt": self.system_prompt,
            "name": self.name,
            "logoUrl": self.logo_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InferredPrompt:
        return cls(
            system_prompt=data.get("systemPrompt") or data.get("system_prompt") or "",
            name=data.get("name"),
            logo_url=data.get("logoUrl") or data.get("logo_url"),
        )


@dataclass
class ImageAnalysis:
    """Brand colours extracted from a logo."""

    primary_color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"primaryColor": self.primary_color}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageAnalysis:
        return cls(primary_color=data.get("primaryColor") or data.get("primary_color"))


@dataclass
class BootstrapResult:
    """Aggregated outcome of the concurrent setup calls.

    Each call that fails leaves its attribute as None and records a
    message under its name in ``errors``. The operation as a whole only
    fails when every attempted call failed.

    Attributes:
        errors: Call name -> error message (None or empty means no error)
        infer_prompt: Prompt inference result
        search_sources: Suggested data sources
        generate_topics: Suggested conversation topics
        analyze_image: Logo analysis result
    """

    errors: dict[str, str | None] = field(default_factory=dict)
    infer_prompt: InferredPrompt | None = None
    search_sources: list[DataSource] | None = None
    generate_topics: list[str] | None = None
    analyze_image: ImageAnalysis | None = None

    @property
    def system_prompt(self) -> str:
        """The inferred system prompt, or an empty string."""
        if self.infer_prompt is None:
            return ""
        return self.infer_prompt.system_prompt or ""

    @property
    def reported_errors(self) -> dict[str, str]:
        """Only the entries of ``errors`` that carry a message."""
        return {key: value for key, value in self.errors.items() if value}

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors": dict(self.errors),
            "inferPrompt": self.infer_prompt.to_dict() if self.infer_prompt else None,
            "searchSources": (
                [s.to_dict() for s in self.search_sources]
                if self.search_sources is not None
                else None
            ),
            "generateTopics": (
                list(self.generate_topics) if self.generate_topics is not None else None
            ),
            "analyzeImage": self.analyze_image.to_dict() if self.analyze_image else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BootstrapResult:
        infer = data.get("inferPrompt")
        sources = data.get("searchSources")
        topics = data.get("generateTopics")
        image = data.get("analyzeImage")
        return cls(
            errors=dict(data.get("errors") or {}),
            infer_prompt=InferredPrompt.from_dict(infer) if isinstance(infer, dict) else None,
            search_sources=(
                [DataSource.from_api(s) for s in sources] if isinstance(sources, list) else None
            ),
            generate_topics=list(topics) if isinstance(topics, list) else None,
            analyze_image=ImageAnalysis.from_dict(image) if isinstance(image, dict) else None,
        )


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
