"""
Navigation History.

Per-identity browser-style history with a cursor, plus a separate
preserved-state scratch store that survives detours such as help.
Both are owned by a service instance; nothing is module-global.
"""
import time
import logging
from typing import Dict, Any, List, Optional, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

NAVIGATION_ALIASES: Dict[str, str] = {
    "inicio": "home",
    "home": "home",
    "menu": "home",
    "menú": "home",
    "principal": "home",
    "atras": "back",
    "atrás": "back",
    "regresar": "back",
    "volver": "back",
    "back": "back",
    "adelante": "forward",
    "siguiente": "forward",
    "forward": "forward",
    "ayuda": "help",
    "help": "help",
    "?": "help",
    "comandos": "help",
    "salir": "cancel",
    "cancelar": "cancel",
    "cancel": "cancel",
    "estado": "status",
    "status": "status",
}

_COMMAND_PREFIXES = "/!#"


@dataclass
class NavigationEntry:
    """One screen in the history."""
    state: str
    title: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state, "title": self.title, "data": self.data, "timestamp": self.timestamp}


@dataclass
class _History:
    entries: List[NavigationEntry] = field(default_factory=list)
    cursor: int = -1
    last_activity: float = 0.0


def parse_navigation_command(text: Optional[str]) -> Optional[str]:
    """
    Recognise a navigation command.

    Returns:
        One of home, back, forward, help, cancel, status; or None
    """
    if not text:
        return None
    token = text.strip().lower()
    if token != "?":
        token = token.lstrip(_COMMAND_PREFIXES)
    return NAVIGATION_ALIASES.get(token)


class NavigationHistory:
    """Bounded back/forward history for every identity."""

    def __init__(
        self,
        max_depth: int = 50,
        breadcrumb_items: int = 3,
        clock: Callable[[], float] = time.time
    ):
        self.max_depth = max_depth
        self.breadcrumb_items = breadcrumb_items
        self._clock = clock
        self._histories: Dict[str, _History] = {}

    def _history(self, identity: str) -> _History:
        history = self._histories.get(identity)
        if history is None:
            history = _History(last_activity=self._clock())
            self._histories[identity] = history
        return history

    def push(self, identity: str, state: str, title: str, data: Optional[Dict[str, Any]] = None) -> NavigationEntry:
        """Record a screen. Anything ahead of the cursor is discarded first."""
        history = self._history(identity)
        now = self._clock()

        if history.cursor < len(history.entries) - 1:
            del history.entries[history.cursor + 1:]

        entry = NavigationEntry(state=state, title=title, data=dict(data or {}), timestamp=now)
        history.entries.append(entry)
        history.cursor = len(history.entries) - 1

        if len(history.entries) > self.max_depth:
            overflow = len(history.entries) - self.max_depth
            del history.entries[:overflow]
            history.cursor -= overflow

        history.last_activity = now
        return entry

    def back(self, identity: str) -> Optional[NavigationEntry]:
        """Move the cursor back. None means there is no earlier entry."""
        history = self._histories.get(identity)
        if history is None or history.cursor <= 0:
            return None
        history.cursor -= 1
        history.last_activity = self._clock()
        return history.entries[history.cursor]

    def forward(self, identity: str) -> Optional[NavigationEntry]:
        """Move the cursor forward. None means there is no later entry."""
        history = self._histories.get(identity)
        if history is None or history.cursor >= len(history.entries) - 1:
            return None
        history.cursor += 1
        history.last_activity = self._clock()
        return history.entries[history.cursor]

    def current(self, identity: str) -> Optional[NavigationEntry]:
        history = self._histories.get(identity)
        if history is None or history.cursor < 0:
            return None
        return history.entries[history.cursor]

    def update_current(self, identity: str, state: str, data: Dict[str, Any]) -> bool:
        """Refresh the data snapshot of the entry under the cursor if it is still that screen."""
        entry = self.current(identity)
        if entry is None or entry.state != state:
            return False
        entry.data = dict(data)
        self._histories[identity].last_activity = self._clock()
        return True

    def can_go_back(self, identity: str) -> bool:
        history = self._histories.get(identity)
        return history is not None and history.cursor > 0

    def can_go_forward(self, identity: str) -> bool:
        history = self._histories.get(identity)
        return history is not None and history.cursor < len(history.entries) - 1

    def breadcrumbs(self, identity: str, max_items: Optional[int] = None) -> List[str]:
        """Titles of the last entries up to and including the cursor."""
        history = self._histories.get(identity)
        if history is None or history.cursor < 0:
            return []
        max_items = max_items or self.breadcrumb_items
        visible = history.entries[:history.cursor + 1]
        return [entry.title for entry in visible[-max_items:]]

    def breadcrumb_text(self, identity: str, max_items: Optional[int] = None) -> str:
        return " > ".join(self.breadcrumbs(identity, max_items))

    def home(self, identity: str, state: str, title: str) -> NavigationEntry:
        return self.push(identity, state, title)

    def clear(self, identity: str) -> None:
        self._histories.pop(identity, None)

    def cleanup_inactive(self, max_idle_seconds: float) -> int:
        """Forget identities idle for longer than max_idle_seconds."""
        cutoff = self._clock() - max_idle_seconds
        stale = [identity for identity, h in self._histories.items() if h.last_activity < cutoff]
        for identity in stale:
            del self._histories[identity]
        if stale:
            logger.info(f"Cleared navigation history for {len(stale)} inactive identities")
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "identities": len(self._histories),
            "total_entries": sum(len(h.entries) for h in self._histories.values()),
            "max_depth": self.max_depth,
        }


class PreservedStateStore:
    """Per-identity keyed scratch data, cleared only by the owning flow."""

    def __init__(self):
        self._store: Dict[str, Dict[str, Any]] = {}

    def preserve(self, identity: str, key: str, value: Any) -> None:
        self._store.setdefault(identity, {})[key] = value

    def get(self, identity: str, key: str) -> Optional[Any]:
        return self._store.get(identity, {}).get(key)

    def clear(self, identity: str, key: Optional[str] = None) -> None:
        """Clear one key, or everything for the identity when key is None."""
        if key is None:
            self._store.pop(identity, None)
            return
        scratch = self._store.get(identity)
        if scratch is not None:
            scratch.pop(key, None)
            if not scratch:
                del self._store[identity]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "identities": len(self._store),
            "preserved_keys": sum(len(v) for v in self._store.values()),
        }
