"""
Service configuration.

All settings come from environment variables (optionally loaded from a
.env file) and are collected into a single Settings object that the
service container hands to each component.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Runtime settings for the conversation engine."""
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0
    redis_connect_timeout: float = 2.0

    session_ttl_seconds: int = 3600
    session_key_prefix: str = "wa_state:"
    legacy_key_prefix: str = "wa:"
    draft_key_prefix: str = "wa_draft:"
    draft_ttl_seconds: int = 86400
    local_cache_max_entries: int = 100

    max_input_length: int = 500

    navigation_max_depth: int = 50
    breadcrumb_items: int = 3
    navigation_inactivity_seconds: int = 86400

    cache_cleanup_interval_seconds: int = 300
    navigation_cleanup_interval_seconds: int = 3600

    legacy_adapter_enabled: bool = False
    migrated_flows: Dict[str, bool] = field(default_factory=lambda: {
        "renewal": True,
        "field_editing": True,
        "menu_navigation": False,
        "form_filling": False,
    })

    permit_fee: float = 150.0
    renewal_fee: float = 99.0
    payment_currency: str = "MXN"

    backend_url: str = "http://localhost:3000"
    backend_api_key: str = ""
    backend_timeout_seconds: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        dotenv_override = os.getenv("DOTENV_OVERRIDE", "false").lower() == "true"
        load_dotenv(override=dotenv_override)

        settings = cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "2")),
            redis_connect_timeout=float(os.getenv("REDIS_CONNECT_TIMEOUT", "2")),
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "3600")),
            session_key_prefix=os.getenv("SESSION_KEY_PREFIX", "wa_state:"),
            legacy_key_prefix=os.getenv("LEGACY_KEY_PREFIX", "wa:"),
            draft_key_prefix=os.getenv("DRAFT_KEY_PREFIX", "wa_draft:"),
            draft_ttl_seconds=int(os.getenv("DRAFT_TTL_SECONDS", "86400")),
            local_cache_max_entries=int(os.getenv("LOCAL_CACHE_MAX_ENTRIES", "100")),
            max_input_length=int(os.getenv("MAX_INPUT_LENGTH", "500")),
            navigation_max_depth=int(os.getenv("NAVIGATION_MAX_DEPTH", "50")),
            breadcrumb_items=int(os.getenv("BREADCRUMB_ITEMS", "3")),
            navigation_inactivity_seconds=int(os.getenv("NAVIGATION_INACTIVITY_SECONDS", "86400")),
            cache_cleanup_interval_seconds=int(os.getenv("CACHE_CLEANUP_INTERVAL_SECONDS", "300")),
            navigation_cleanup_interval_seconds=int(
                os.getenv("NAVIGATION_CLEANUP_INTERVAL_SECONDS", "3600")
            ),
            legacy_adapter_enabled=_env_bool("LEGACY_ADAPTER_ENABLED", "false"),
            migrated_flows={
                "renewal": _env_bool("MIGRATE_RENEWAL", "true"),
                "field_editing": _env_bool("MIGRATE_FIELD_EDITING", "true"),
                "menu_navigation": _env_bool("MIGRATE_MENU_NAVIGATION", "false"),
                "form_filling": _env_bool("MIGRATE_FORM_FILLING", "false"),
            },
            permit_fee=float(os.getenv("PERMIT_FEE", "150")),
            renewal_fee=float(os.getenv("RENEWAL_FEE", "99")),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "MXN"),
            backend_url=os.getenv("BACKEND_URL", "http://localhost:3000"),
            backend_api_key=os.getenv("BACKEND_API_KEY", ""),
            backend_timeout_seconds=int(os.getenv("BACKEND_TIMEOUT_SECONDS", "10")),
        )

        if settings.local_cache_max_entries < 1:
            raise ValueError("LOCAL_CACHE_MAX_ENTRIES must be at least 1")

        # Log non-sensitive configuration only
        logger.info(
            f"Settings loaded: ttl={settings.session_ttl_seconds}s, "
            f"cache_entries={settings.local_cache_max_entries}, "
            f"legacy_adapter={settings.legacy_adapter_enabled}"
        )
        return settings
