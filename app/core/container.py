"""
Service wiring.

Builds every engine component from Settings once at startup. Tests
construct a ServiceContainer directly with fakes instead.
"""
import logging
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass

from app.core.config import Settings
from app.services.collaborators import HttpPaymentLinkProvider, HttpApplicationRepository, HttpIdentityResolver
from app.services.conversation_engine import ConversationEngine, TurnResult
from app.services.conversation_state import ConversationState, ConversationStateCodec
from app.services.legacy_adapter import LegacyCompatibilityAdapter, AdapterOutcome
from app.services.maintenance import MaintenanceScheduler, MaintenanceJob
from app.services.navigation import NavigationHistory, PreservedStateStore
from app.services.session_store import SessionStore, JsonCodec
from app.utils.cache import LocalCache, create_redis_client

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything one process needs to handle conversation turns."""
    settings: Settings
    engine: ConversationEngine
    scheduler: MaintenanceScheduler
    adapter: Optional[LegacyCompatibilityAdapter] = None

    def process_message(self, identity: str, text: str) -> Union[TurnResult, AdapterOutcome]:
        """Run a turn through the session of record."""
        if self.adapter is not None:
            return self.adapter.process_message(identity, text)
        return self.engine.process_message(identity, text)

    def get_state(self, identity: str) -> Optional[ConversationState]:
        if self.adapter is not None:
            return self.adapter.get_state(identity)
        return self.engine.get_state(identity)

    def reset_session(self, identity: str) -> None:
        if self.adapter is not None:
            self.adapter.reset_session(identity)
        else:
            self.engine.reset_session(identity)

    def ping(self) -> bool:
        return self.engine.sessions.ping()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.engine.get_stats()
        stats["maintenance"] = self.scheduler.get_stats()
        stats["adapter"] = self.adapter.get_stats() if self.adapter is not None else None
        return stats


def build_scheduler(settings: Settings, engine: ConversationEngine,
                    legacy_store: Optional[SessionStore] = None) -> MaintenanceScheduler:
    """Cache expiry sweep and navigation inactivity cleanup."""
    stores = [engine.sessions, engine.drafts] + ([legacy_store] if legacy_store else [])

    def sweep_caches() -> int:
        return sum(store.cleanup_expired_entries() for store in stores)

    def sweep_navigation() -> int:
        return engine.navigation.cleanup_inactive(settings.navigation_inactivity_seconds)

    return MaintenanceScheduler([
        MaintenanceJob("local_cache_sweep", settings.cache_cleanup_interval_seconds, sweep_caches),
        MaintenanceJob("navigation_cleanup", settings.navigation_cleanup_interval_seconds, sweep_navigation),
    ])


def build_container(settings: Optional[Settings] = None) -> ServiceContainer:
    """Wire the production container from settings."""
    settings = settings or Settings.from_env()
    client = create_redis_client(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        connect_timeout=settings.redis_connect_timeout
    )

    def store(name: str, prefix: str, ttl: int, codec) -> SessionStore:
        cache = LocalCache(max_entries=settings.local_cache_max_entries, ttl_seconds=ttl)
        return SessionStore(client, cache, codec=codec, key_prefix=prefix, ttl_seconds=ttl, name=name)

    sessions = store("session", settings.session_key_prefix, settings.session_ttl_seconds, ConversationStateCodec())
    drafts = store("draft", settings.draft_key_prefix, settings.draft_ttl_seconds, JsonCodec())

    backend = (settings.backend_url, settings.backend_api_key, settings.backend_timeout_seconds)
    engine = ConversationEngine(
        sessions=sessions,
        drafts=drafts,
        navigation=NavigationHistory(settings.navigation_max_depth, settings.breadcrumb_items),
        preserved=PreservedStateStore(),
        payments=HttpPaymentLinkProvider(*backend),
        applications=HttpApplicationRepository(*backend),
        identities=HttpIdentityResolver(*backend),
        settings=settings,
    )

    adapter = None
    legacy_store = None
    if settings.legacy_adapter_enabled:
        legacy_store = store("legacy", settings.legacy_key_prefix, settings.session_ttl_seconds, JsonCodec())
        adapter = LegacyCompatibilityAdapter(
            engine, legacy_store, settings.migrated_flows, settings.max_input_length
        )

    logger.info(f"Service container built (legacy adapter: {adapter is not None})")
    return ServiceContainer(
        settings=settings,
        engine=engine,
        scheduler=build_scheduler(settings, engine, legacy_store),
        adapter=adapter,
    )
