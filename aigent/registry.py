"""Model registry and the backend bundle handed to an Engine.

Providers are registered as factories; model instances are built on demand
and cached by model name. The cache entry carries a hash of the settings it
was built from, so changed settings (e.g. after a config reload) rebuild
the model instead of serving a stale one.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aigent.llm import anthropic_factory

if TYPE_CHECKING:
    from aigent.config import ModelSettings
    from aigent.llm import ModelBackend
    from aigent.retrieval import RetrievalBackend
    from aigent.tools import ToolRegistry

logger = logging.getLogger(__name__)

ModelFactory = Callable[["ModelSettings"], "ModelBackend"]


@dataclass
class Backends:
    """External collaborators of one engine.

    tools and retriever are optional; plans using an absent backend fail
    validation before execution.
    """

    model: ModelBackend
    tools: ToolRegistry | None = None
    retriever: RetrievalBackend | None = None

    def tool_names(self) -> list[str]:
        return self.tools.names() if self.tools else []


def _hash_settings(settings: ModelSettings) -> str:
    config_json = json.dumps(settings.model_dump(), sort_keys=True)
    return hashlib.sha256(config_json.encode()).hexdigest()[:16]


class ModelRegistry:
    """Provider factories plus a cache of built models: {name: (hash, model)}."""

    def __init__(self) -> None:
        self._factories: dict[str, ModelFactory] = {}
        self._models: dict[str, tuple[str, ModelBackend]] = {}
        self._lock = threading.Lock()

    def register(self, provider: str, factory: ModelFactory) -> None:
        with self._lock:
            if provider in self._factories:
                raise ValueError(f"Model provider '{provider}' is already registered")
            self._factories[provider] = factory

    def providers(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)

    def get(self, name: str) -> ModelBackend | None:
        with self._lock:
            entry = self._models.get(name)
        return entry[1] if entry else None

    def create(self, settings: ModelSettings) -> ModelBackend:
        """Return the cached model for these settings, or build a new one."""
        settings_hash = _hash_settings(settings)
        with self._lock:
            cached = self._models.get(settings.name)
            if cached and cached[0] == settings_hash:
                logger.debug(f"Model cache hit: {settings.name}")
                return cached[1]

            factory = self._factories.get(settings.provider)
            if factory is None:
                raise ValueError(
                    f"Unknown model provider '{settings.provider}'. "
                    f"Available: {sorted(self._factories)}"
                )

            logger.info(
                f"Building model '{settings.name}' "
                f"(provider={settings.provider}, model_id={settings.model_id})"
            )
            model = factory(settings)
            self._models[settings.name] = (settings_hash, model)
            return model

    def invalidate(self, name: str | None = None) -> None:
        """Clear the cache. If name given, only clear that model."""
        with self._lock:
            if name:
                self._models.pop(name, None)
                logger.info(f"Model cache invalidated: {name}")
            else:
                self._models.clear()
                logger.info("Model cache invalidated: all models")


def default_model_registry() -> ModelRegistry:
    registry = ModelRegistry()
    registry.register("anthropic", anthropic_factory)
    return registry
