"""Dependency injection container for the portal orchestrator.

Lightweight wiring of core services at application startup.
Uses lazy initialization — services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

from portal_core.config.settings import Settings, get_settings
from portal_core.exceptions import RetryConfig

logger = logging.getLogger(__name__)


class PortalContainer:
    """Central service container for the orchestration engine."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._kv_store = None
        self._artifact_store = None
        self._repository = None
        self._event_bus = None
        self._runner = None
        self._service = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def kv_store(self):
        if self._kv_store is None:
            if self.settings.storage_backend == "file":
                from portal_core.storage.kv_store import JsonFileKVStore
                self._kv_store = JsonFileKVStore(
                    self.settings.storage_path,
                    write_attempts=self.settings.storage_write_attempts,
                )
                logger.info("JsonFileKVStore initialized at %s", self._kv_store.storage_path)
            else:
                from portal_core.storage.kv_store import InMemoryKVStore
                self._kv_store = InMemoryKVStore()
                logger.info("InMemoryKVStore initialized")
        return self._kv_store

    @property
    def artifact_store(self):
        if self._artifact_store is None:
            from portal_core.storage.artifact_store import ArtifactStore
            self._artifact_store = ArtifactStore(self.kv_store)
        return self._artifact_store

    @property
    def repository(self):
        if self._repository is None:
            from portal_core.storage.repository import SessionRepository
            self._repository = SessionRepository(
                self.kv_store, transcript_limit=self.settings.transcript_limit
            )
        return self._repository

    @property
    def event_bus(self):
        if self._event_bus is None:
            from portal_core.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def runner(self):
        if self._runner is None:
            from portal_core.runners import NullAgentRunner, SimulatedAgentRunner
            if self.settings.agent_runner == "simulated":
                self._runner = SimulatedAgentRunner(step_seconds=self.settings.simulated_step_seconds)
            else:
                self._runner = NullAgentRunner()
            logger.info("Agent runner: %s", type(self._runner).__name__)
        return self._runner

    @runner.setter
    def runner(self, runner) -> None:
        if self._service is not None:
            raise RuntimeError("Runner must be set before the service is created")
        self._runner = runner

    @property
    def service(self):
        if self._service is None:
            from portal_core.orchestration.service import OrchestrationService
            settings = self.settings
            self._service = OrchestrationService(
                self.runner,
                artifact_store=self.artifact_store,
                repository=self.repository,
                event_bus=self.event_bus,
                max_concurrent_nodes_per_graph=settings.max_concurrent_nodes_per_graph,
                tick_interval_seconds=settings.tick_interval_seconds,
                transcript_limit=settings.transcript_limit,
                retry_config=RetryConfig(
                    initial_delay_ms=settings.backoff_initial_ms,
                    max_delay_ms=settings.backoff_max_ms,
                ),
            )
            logger.info("OrchestrationService initialized")
        return self._service

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "kv_store": self._kv_store is not None,
            "artifact_store": self._artifact_store is not None,
            "repository": self._repository is not None,
            "event_bus": self._event_bus is not None,
            "runner": self._runner is not None,
            "service": self._service is not None,
        }


# Global container
_container: Optional[PortalContainer] = None


def get_container() -> PortalContainer:
    global _container
    if _container is None:
        _container = PortalContainer()
    return _container


def init_container(settings: Optional[Settings] = None) -> PortalContainer:
    global _container
    _container = PortalContainer(settings)
    return _container


def shutdown_container() -> None:
    global _container
    _container = None
