"""Backends for the setup workflow.

This module provides:
- SetupBackend: Protocol for the chatbot, setup, prompt and widget services
- HTTPSetupBackend: REST client over aiohttp
- InMemorySetupBackend: In-process fake for tests and demos
- SetupBootstrapper: Chatbot creation plus the concurrent setup calls

Use create_setup_backend() to create a backend from configuration.

Example:
    ```python
    from verly_setup.api import create_setup_backend

    backend = create_setup_backend("memory")
    await backend.initialize()
    ...
    await backend.close()
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .base import SetupBackend
from .bootstrap import ProcessingOutcome, SetupBootstrapper
from .http_backend import HTTPSetupBackend
from .memory import InMemorySetupBackend

if TYPE_CHECKING:
    from ..config import SetupConfig


def create_setup_backend(
    backend_type: str,
    config: SetupConfig | dict[str, Any] | None = None,
) -> SetupBackend:
    """Create a setup backend from configuration.

    Args:
        backend_type: Type of backend ("memory", "http")
        config: A SetupConfig, or a backend-specific dict:
            - memory: InMemorySetupBackend constructor arguments
            - http: {"base_url": ..., "auth_token": ..., "timeout": ...}

    Returns:
        Configured SetupBackend implementation

    Raises:
        ValueError: If backend_type is not recognized

    Example:
        ```python
        # For testing
        backend = create_setup_backend("memory")

        # For production
        backend = create_setup_backend("http", SetupConfig.load("setup.yaml"))
        ```
    """
    backend_type_lower = backend_type.lower()

    if backend_type_lower == "memory":
        options = config if isinstance(config, dict) else {}
        return InMemorySetupBackend.from_config(options)
    elif backend_type_lower == "http":
        if config is None:
            raise ValueError("The http backend requires a configuration with base_url")
        if isinstance(config, dict):
            return HTTPSetupBackend.from_config(config)
        return HTTPSetupBackend.from_config(config.api.to_dict(), retry=config.retry)
    else:
        raise ValueError(
            f"Unknown setup backend type: {backend_type}. Available types: memory, http"
        )


__all__ = [
    "SetupBackend",
    "HTTPSetupBackend",
    "InMemorySetupBackend",
    "SetupBootstrapper",
    "ProcessingOutcome",
    "create_setup_backend",
]
