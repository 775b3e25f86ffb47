"""Verly Setup - the onboarding wizard that turns a website into a chatbot."""

from .cache import FileStorage, MemoryStorage, SetupCache, SetupCacheEntry
from .config import ConfigurationError, SetupConfig
from .controller import StepController
from .effects import CancellationToken, EffectScope
from .events import (
    UI_TOPIC,
    Event,
    EventRecorder,
    InMemoryEventBus,
    ToastLevel,
    UiEmitter,
    UiEventType,
)
from .exceptions import (
    BackendError,
    InvalidStepError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ProcessingError,
    SetupError,
    StaleStateError,
    ValidationError,
    VersionConflictError,
)
from .finalizer import CompletionFinalizer
from .hydration import ResumeHydrator
from .models import BootstrapResult, ServerChatbotRecord
from .polling import PromptPoller
from .processing import ProcessingOrchestrator
from .progress import StagedProgress
from .session import SetupSession, SetupStore

__version__ = "0.1.0"

__all__ = [
    # Controller
    "StepController",
    "SetupConfig",
    "ConfigurationError",
    # Session
    "SetupSession",
    "SetupStore",
    # Components
    "ProcessingOrchestrator",
    "ResumeHydrator",
    "PromptPoller",
    "CompletionFinalizer",
    "StagedProgress",
    # Cache
    "SetupCache",
    "SetupCacheEntry",
    "MemoryStorage",
    "FileStorage",
    # Models
    "ServerChatbotRecord",
    "BootstrapResult",
    # Effects and events
    "CancellationToken",
    "EffectScope",
    "Event",
    "UiEventType",
    "EventRecorder",
    "InMemoryEventBus",
    "ToastLevel",
    "UiEmitter",
    "UI_TOPIC",
    # Errors
    "SetupError",
    "ValidationError",
    "BackendError",
    "NotFoundError",
    "VersionConflictError",
    "ProcessingError",
    "PersistenceError",
    "StaleStateError",
    "InvalidStepError",
    "InvalidTransitionError",
]
