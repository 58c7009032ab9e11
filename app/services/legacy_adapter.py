"""
Legacy Compatibility Adapter.

Lets the older status-string session model and the structured
ConversationState model coexist while flows migrate one family at a
time. The legacy store stays the session of record: each structured
turn reads the legacy record, converts it, runs the engine, and writes
the converted result back.

Legacy record shape:
    {
        "status": "renewal_field_input",
        "data": {...answers...},
        "currentField": 3,
        "editingField": null,
        "permit": {...},
        "editData": {...},
        "scratch": {...any other structured data...},
        "timestamp": "2024-01-01T00:00:00"
    }
"""
import logging
from typing import Dict, Any, Optional, Set
from datetime import datetime
from dataclasses import dataclass

from app.services.conversation_engine import ConversationEngine, TurnResult
from app.services.conversation_state import ConversationState, StateType, StateKey, create_state
from app.services.input_router import GLOBAL_COMMANDS, RENEWAL_COMMANDS, sanitize_input
from app.services.session_store import SessionStore
from app.utils.identity import mask_identity

logger = logging.getLogger(__name__)

LEGACY_STATUS_MAP: Dict[str, StateKey] = {
    "showing_menu": (StateType.MENU, "main"),
    "showing_conversational_menu": (StateType.MENU, "main"),
    "showing_privacy_menu": (StateType.MENU, "privacy"),
    "quick_actions_menu": (StateType.MENU, "quick_actions"),
    "renewal_selection": (StateType.MENU, "renewal"),
    "renewal_field_selection": (StateType.MENU, "renewal"),
    "draft_saved": (StateType.MENU, "draft"),
    "collecting": (StateType.FORM, "new_permit"),
    "editing_field": (StateType.FORM, "field_edit"),
    "renewal_field_editing": (StateType.FORM, "field_edit"),
    "awaiting_privacy_consent": (StateType.FORM, "privacy_consent"),
    "renewal_field_input": (StateType.FORM, "renewal_edit"),
    "confirming": (StateType.CONFIRMATION, "permit_data"),
    "renewal_confirmation": (StateType.CONFIRMATION, "renewal_data"),
    "awaiting_payment": (StateType.CONFIRMATION, "payment"),
    "checking_status": (StateType.STATUS, "checking"),
    "managing_applications": (StateType.STATUS, "managing"),
    "awaiting_folio_selection": (StateType.STATUS, "selecting"),
    "showing_help": (StateType.HELP, "general"),
    "showing_form_help": (StateType.HELP, "form_help"),
    "showing_payment_help": (StateType.HELP, "payment_help"),
    "validation_error": (StateType.ERROR, "validation"),
    "error_recovery": (StateType.ERROR, "system"),
    "rate_limit_options": (StateType.ERROR, "rate_limit"),
    "permit_delivered": (StateType.NOTIFICATION, "delivery"),
    "permit_downloaded": (StateType.NOTIFICATION, "delivery"),
    "reminder_sent": (StateType.NOTIFICATION, "reminder"),
    "permit_ready": (StateType.NOTIFICATION, "permit_ready"),
}

# Many-to-one statuses above resolve to these when a state is written back
CANONICAL_STATUS: Dict[StateKey, str] = {
    (StateType.MENU, "main"): "showing_menu",
    (StateType.MENU, "privacy"): "showing_privacy_menu",
    (StateType.MENU, "quick_actions"): "quick_actions_menu",
    (StateType.MENU, "renewal"): "renewal_selection",
    (StateType.MENU, "draft"): "draft_saved",
    (StateType.FORM, "new_permit"): "collecting",
    (StateType.FORM, "field_edit"): "editing_field",
    (StateType.FORM, "privacy_consent"): "awaiting_privacy_consent",
    (StateType.FORM, "renewal_edit"): "renewal_field_input",
    (StateType.CONFIRMATION, "permit_data"): "confirming",
    (StateType.CONFIRMATION, "renewal_data"): "renewal_confirmation",
    (StateType.CONFIRMATION, "payment"): "awaiting_payment",
    (StateType.STATUS, "checking"): "checking_status",
    (StateType.STATUS, "managing"): "managing_applications",
    (StateType.STATUS, "selecting"): "awaiting_folio_selection",
    (StateType.HELP, "general"): "showing_help",
    (StateType.HELP, "form_help"): "showing_form_help",
    (StateType.HELP, "payment_help"): "showing_payment_help",
    (StateType.ERROR, "validation"): "validation_error",
    (StateType.ERROR, "system"): "error_recovery",
    (StateType.ERROR, "rate_limit"): "rate_limit_options",
    (StateType.NOTIFICATION, "delivery"): "permit_delivered",
    (StateType.NOTIFICATION, "reminder"): "reminder_sent",
    (StateType.NOTIFICATION, "permit_ready"): "permit_ready",
}

RENEWAL_PAIRS = {
    (StateType.MENU, "renewal"),
    (StateType.FORM, "renewal_edit"),
    (StateType.CONFIRMATION, "renewal_data"),
}

FORM_FILLING_STATUSES = {"collecting", "confirming", "awaiting_privacy_consent"}
FIELD_EDITING_STATUSES = {"renewal_field_input", "renewal_field_editing", "editing_field"}

# Structured data keys that have their own slot in the legacy record
_LEGACY_SLOTS = {
    "answers": "data",
    "current_field": "currentField",
    "editing_field": "editingField",
    "permit": "permit",
    "edit_data": "editData",
}


def infer_state_key(status: str) -> StateKey:
    """Best-effort pair for a status missing from the table."""
    if "renewal" in status:
        if "field" in status:
            return (StateType.FORM, "renewal_edit")
        return (StateType.MENU, "renewal")
    if "menu" in status:
        return (StateType.MENU, "main")
    if status == "collecting" or "editing" in status:
        return (StateType.FORM, "new_permit")
    if status == "confirming":
        return (StateType.CONFIRMATION, "permit_data")
    return (StateType.MENU, "main")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        # Legacy writers stored epoch milliseconds
        return datetime.utcfromtimestamp(value / 1000)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return datetime.utcnow()


@dataclass
class AdapterOutcome:
    """What the adapter did with one message."""
    use_structured: bool
    turn_result: Optional[TurnResult] = None
    legacy_state: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "use_structured": self.use_structured,
            "turn_result": self.turn_result.to_dict() if self.turn_result else None,
            "legacy_status": (self.legacy_state or {}).get("status"),
        }


class LegacyCompatibilityAdapter:
    """
    Boundary translator between legacy records and structured states.

    Holds no session data of its own; the legacy store is read and
    written on every structured turn.
    """

    def __init__(
        self,
        engine: ConversationEngine,
        legacy_store: SessionStore,
        migrated_flows: Optional[Dict[str, bool]] = None,
        max_input_length: int = 500
    ):
        self.engine = engine
        self.legacy_store = legacy_store
        self.migrated_flows = dict(migrated_flows or {
            "renewal": True,
            "field_editing": True,
            "menu_navigation": False,
            "form_filling": False,
        })
        self.max_input_length = max_input_length

        self._enabled_identities: Set[str] = set()
        self._disabled_identities: Set[str] = set()
        self._stats = {"structured_turns": 0, "legacy_turns": 0, "write_throughs": 0}

        logger.info(f"Legacy adapter initialized, migrated flows: {self.migrated_flows}")

    # Per-identity overrides

    def enable_for_identity(self, identity: str) -> None:
        self._disabled_identities.discard(identity)
        self._enabled_identities.add(identity)
        logger.info(f"Structured routing forced on for {mask_identity(identity)}")

    def disable_for_identity(self, identity: str) -> None:
        self._enabled_identities.discard(identity)
        self._disabled_identities.add(identity)
        logger.info(f"Structured routing forced off for {mask_identity(identity)}")

    # Conversion

    def to_structured(self, identity: str, legacy: Optional[Dict[str, Any]]) -> Optional[ConversationState]:
        """
        Convert a legacy record into a structured state.

        Returns None when there is no legacy record, so the engine treats
        the turn as a first contact.
        """
        if not legacy or not legacy.get("status"):
            return None

        status = legacy["status"]
        key = LEGACY_STATUS_MAP.get(status)
        if key is None:
            key = infer_state_key(status)
            logger.info(f"Inferred {key[0].value}:{key[1]} for unmapped legacy status '{status}'")

        data: Dict[str, Any] = dict(legacy.get("scratch") or {})
        for structured_key, legacy_key in _LEGACY_SLOTS.items():
            if legacy.get(legacy_key) is not None:
                data[structured_key] = legacy[legacy_key]
        data.setdefault("answers", {})
        is_renewal = key in RENEWAL_PAIRS or "renewal" in status
        data.setdefault("flow", "renewal" if is_renewal else "new_permit")
        if key[0] == StateType.CONFIRMATION and key[1] != "payment":
            data.setdefault("field_count", self.engine.field_engines[data["flow"]].field_count)

        state = create_state(identity, key[0], key[1], data)
        state.legacy_status = status
        state.last_transition_at = _parse_timestamp(legacy.get("timestamp"))
        return state

    def to_legacy(self, state: ConversationState) -> Dict[str, Any]:
        """Convert a structured state into the legacy record shape."""
        if state.legacy_status and LEGACY_STATUS_MAP.get(state.legacy_status) == state.key:
            status = state.legacy_status
        else:
            status = CANONICAL_STATUS[state.key]

        scratch = dict(state.data)
        record: Dict[str, Any] = {"status": status}
        for structured_key, legacy_key in _LEGACY_SLOTS.items():
            record[legacy_key] = scratch.pop(structured_key, None)
        if record["data"] is None:
            record["data"] = {}
        record["scratch"] = scratch
        record["timestamp"] = state.last_transition_at.isoformat()
        return record

    # Routing

    def should_use_structured(self, identity: str, legacy: Optional[Dict[str, Any]], text: str) -> bool:
        """Whether the structured engine should handle this turn."""
        if identity in self._disabled_identities:
            return False
        if identity in self._enabled_identities:
            return True

        token = text.strip().lower()
        status = (legacy or {}).get("status") or ""

        if self.migrated_flows.get("renewal"):
            if "renewal" in status:
                return True
            if token in RENEWAL_COMMANDS:
                return True
            if token.isdigit() and status == "renewal_field_selection":
                return True

        if self.migrated_flows.get("field_editing"):
            if status in FIELD_EDITING_STATUSES:
                return True
            if (legacy or {}).get("editingField") is not None:
                return True

        if self.migrated_flows.get("menu_navigation"):
            key = LEGACY_STATUS_MAP.get(status)
            if not status or (key is not None and key[0] == StateType.MENU):
                return True

        if self.migrated_flows.get("form_filling") and status in FORM_FILLING_STATUSES:
            return True

        return False

    def process_message(self, identity: str, text: str) -> AdapterOutcome:
        """
        Run one message through the adapter.

        Returns an outcome with use_structured False when the turn belongs
        to the legacy handlers; the legacy record is returned untouched.
        """
        text = sanitize_input(text, self.max_input_length)
        legacy = self.legacy_store.get(identity)

        is_global = text.lower().lstrip("/!#") in GLOBAL_COMMANDS
        if not is_global and not self.should_use_structured(identity, legacy, text):
            self._stats["legacy_turns"] += 1
            return AdapterOutcome(use_structured=False, legacy_state=legacy)

        self._stats["structured_turns"] += 1
        state = self.to_structured(identity, legacy)
        result = self.engine.handle_turn(identity, state, text)

        written = self.to_legacy(result.state)
        self.legacy_store.set(identity, written)
        self._stats["write_throughs"] += 1
        logger.info(
            f"Wrote {written['status']} through to legacy store for {mask_identity(identity)}",
            extra={"extra_fields": {
                "event": "legacy_write_through",
                "legacy_status": written["status"],
                "state": result.state.label,
            }}
        )
        return AdapterOutcome(use_structured=True, turn_result=result, legacy_state=written)

    def get_state(self, identity: str) -> Optional[ConversationState]:
        return self.to_structured(identity, self.legacy_store.get(identity))

    def reset_session(self, identity: str) -> None:
        self.legacy_store.clear(identity)
        self.engine.reset_session(identity)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "migrated_flows": dict(self.migrated_flows),
            "forced_on": len(self._enabled_identities),
            "forced_off": len(self._disabled_identities),
            "legacy_store": self.legacy_store.get_statistics(),
        }
