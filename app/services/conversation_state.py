"""
Conversation State Model.

Structured representation of where a conversation is: a state type, a
context within that type, accumulated data, and the set of inputs the
state accepts.

Key features:
1. Registry of expected inputs for every (type, context) pair
2. Explicit transition table between pairs
3. Breadcrumb labels for navigation
4. JSON codec used by the session store
"""
import re
import json
import logging
from typing import Dict, Any, List, Optional, Tuple, FrozenSet
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum

from app.middleware.error_handling import CorruptStateException, UnknownStateException

logger = logging.getLogger(__name__)


class StateType(str, Enum):
    """Top-level kinds of conversation state."""
    MENU = "menu"
    FORM = "form"
    CONFIRMATION = "confirmation"
    STATUS = "status"
    HELP = "help"
    ERROR = "error"
    NOTIFICATION = "notification"


# Special expected-input tokens
TEXT_INPUT = "<text>"
FIELD_INDEX = "<field_index>"
FIELD_EDIT = "<field_index> <value>"
ITEM_INDEX = "<item_index>"

FIELD_EDIT_PATTERN = re.compile(r"^(\d{1,2})\s+(.+)$", re.DOTALL)

CONFIRM_WORDS = ("confirmar", "confirm", "si", "sí", "yes")
EDIT_WORDS = ("editar", "edit", "cambiar")
CANCEL_WORDS = ("no", "cancelar", "cancel")
HELP_WORDS = ("menu", "back", "continue", "continuar", "atras")


def _numbers(count: int) -> List[str]:
    return [str(i) for i in range(1, count + 1)]


MENU_MAX_OPTIONS: Dict[str, int] = {
    "main": 5,
    "privacy": 3,
    "quick_actions": 4,
    "renewal": 3,
    "draft": 4,
}

EXPECTED_INPUTS: Dict[StateType, Dict[str, List[str]]] = {
    StateType.MENU: {
        "main": _numbers(MENU_MAX_OPTIONS["main"]) + ["nuevo", "permiso", "renovar", "estado", "privacidad"],
        "privacy": _numbers(MENU_MAX_OPTIONS["privacy"]),
        "quick_actions": _numbers(MENU_MAX_OPTIONS["quick_actions"]),
        "renewal": _numbers(MENU_MAX_OPTIONS["renewal"]),
        "draft": _numbers(MENU_MAX_OPTIONS["draft"]),
    },
    StateType.FORM: {
        "new_permit": [TEXT_INPUT],
        "field_edit": [TEXT_INPUT],
        "renewal_edit": _numbers(9) + ["renovar", "cancelar"],
        "privacy_consent": _numbers(2),
    },
    StateType.CONFIRMATION: {
        "permit_data": [FIELD_INDEX, FIELD_EDIT] + list(CONFIRM_WORDS + EDIT_WORDS + CANCEL_WORDS),
        "renewal_data": _numbers(3) + ["confirmar", "editar", "cancelar"],
        "payment": _numbers(2),
    },
    StateType.STATUS: {
        "checking": _numbers(3) + ["crear", "renovar"],
        "managing": _numbers(4),
        "selecting": [ITEM_INDEX],
    },
    StateType.HELP: {
        "general": list(HELP_WORDS) + [TEXT_INPUT],
        "form_help": list(HELP_WORDS) + [TEXT_INPUT],
        "payment_help": list(HELP_WORDS) + [TEXT_INPUT],
    },
    StateType.ERROR: {
        "validation": [TEXT_INPUT],
        "system": [TEXT_INPUT],
        "rate_limit": _numbers(2),
    },
    StateType.NOTIFICATION: {
        "permit_ready": [TEXT_INPUT],
        "reminder": [TEXT_INPUT],
        "delivery": [TEXT_INPUT],
    },
}

BREADCRUMB_LABELS: Dict[Tuple[StateType, str], str] = {
    (StateType.MENU, "main"): "Main Menu",
    (StateType.MENU, "privacy"): "Privacy",
    (StateType.MENU, "quick_actions"): "Quick Actions",
    (StateType.MENU, "renewal"): "Renewal",
    (StateType.MENU, "draft"): "Saved Draft",
    (StateType.FORM, "new_permit"): "New Permit",
    (StateType.FORM, "field_edit"): "Edit Field",
    (StateType.FORM, "renewal_edit"): "Renewal Changes",
    (StateType.FORM, "privacy_consent"): "Privacy Consent",
    (StateType.CONFIRMATION, "permit_data"): "Confirm Permit",
    (StateType.CONFIRMATION, "renewal_data"): "Confirm Renewal",
    (StateType.CONFIRMATION, "payment"): "Payment",
    (StateType.STATUS, "checking"): "My Permits",
    (StateType.STATUS, "managing"): "Manage Permits",
    (StateType.STATUS, "selecting"): "Select Permit",
    (StateType.HELP, "general"): "Help",
    (StateType.HELP, "form_help"): "Form Help",
    (StateType.HELP, "payment_help"): "Payment Help",
    (StateType.ERROR, "validation"): "Validation Error",
    (StateType.ERROR, "system"): "System Error",
    (StateType.ERROR, "rate_limit"): "Please Wait",
    (StateType.NOTIFICATION, "permit_ready"): "Permit Ready",
    (StateType.NOTIFICATION, "reminder"): "Reminder",
    (StateType.NOTIFICATION, "delivery"): "Delivery",
}

StateKey = Tuple[StateType, str]

MAIN_MENU: StateKey = (StateType.MENU, "main")
SYSTEM_ERROR: StateKey = (StateType.ERROR, "system")

# Reachable from any state: home, help, status and failure recovery
GLOBAL_TARGETS: FrozenSet[StateKey] = frozenset({
    MAIN_MENU,
    (StateType.STATUS, "checking"),
    (StateType.HELP, "general"),
    (StateType.HELP, "form_help"),
    (StateType.HELP, "payment_help"),
    SYSTEM_ERROR,
})

TRANSITIONS: Dict[StateKey, FrozenSet[StateKey]] = {
    (StateType.MENU, "main"): frozenset({
        (StateType.FORM, "new_permit"), (StateType.FORM, "privacy_consent"),
        (StateType.MENU, "draft"), (StateType.MENU, "renewal"),
        (StateType.MENU, "privacy"), (StateType.STATUS, "checking"),
    }),
    (StateType.MENU, "privacy"): frozenset(),
    (StateType.MENU, "quick_actions"): frozenset({
        (StateType.FORM, "new_permit"), (StateType.FORM, "privacy_consent"),
        (StateType.MENU, "draft"), (StateType.STATUS, "managing"), (StateType.MENU, "renewal"),
    }),
    (StateType.MENU, "renewal"): frozenset({
        (StateType.CONFIRMATION, "renewal_data"), (StateType.FORM, "renewal_edit"),
    }),
    (StateType.MENU, "draft"): frozenset({
        (StateType.FORM, "new_permit"), (StateType.FORM, "privacy_consent"),
    }),
    (StateType.FORM, "privacy_consent"): frozenset({(StateType.FORM, "new_permit")}),
    (StateType.FORM, "new_permit"): frozenset({(StateType.CONFIRMATION, "permit_data")}),
    (StateType.FORM, "field_edit"): frozenset({
        (StateType.CONFIRMATION, "permit_data"), (StateType.FORM, "renewal_edit"),
    }),
    (StateType.FORM, "renewal_edit"): frozenset({
        (StateType.FORM, "field_edit"), (StateType.CONFIRMATION, "renewal_data"),
    }),
    (StateType.CONFIRMATION, "permit_data"): frozenset({
        (StateType.FORM, "field_edit"), (StateType.CONFIRMATION, "payment"),
    }),
    (StateType.CONFIRMATION, "renewal_data"): frozenset({
        (StateType.FORM, "renewal_edit"), (StateType.CONFIRMATION, "payment"),
    }),
    (StateType.CONFIRMATION, "payment"): frozenset(),
    (StateType.STATUS, "checking"): frozenset({
        (StateType.FORM, "new_permit"), (StateType.FORM, "privacy_consent"),
        (StateType.MENU, "draft"), (StateType.MENU, "renewal"),
    }),
    (StateType.STATUS, "managing"): frozenset({
        (StateType.STATUS, "selecting"), (StateType.MENU, "renewal"),
        (StateType.FORM, "new_permit"), (StateType.FORM, "privacy_consent"),
        (StateType.MENU, "draft"),
    }),
    (StateType.STATUS, "selecting"): frozenset(),
    (StateType.ERROR, "validation"): frozenset(),
    (StateType.ERROR, "system"): frozenset(),
    (StateType.ERROR, "rate_limit"): frozenset(),
    (StateType.NOTIFICATION, "permit_ready"): frozenset(),
    (StateType.NOTIFICATION, "reminder"): frozenset(),
    (StateType.NOTIFICATION, "delivery"): frozenset(),
    (StateType.HELP, "general"): frozenset(),
    (StateType.HELP, "form_help"): frozenset(),
    (StateType.HELP, "payment_help"): frozenset(),
}


def is_registered(state_type: StateType, context: str) -> bool:
    """Whether a (type, context) pair has expected inputs registered."""
    return context in EXPECTED_INPUTS.get(state_type, {})


def is_transition_allowed(source: StateKey, target: StateKey) -> bool:
    """Whether the transition table permits moving from source to target."""
    if source == target or target in GLOBAL_TARGETS:
        return True
    return target in TRANSITIONS.get(source, frozenset())


@dataclass
class ConversationState:
    """Where one identity's conversation currently is."""
    identity: str
    state_type: StateType
    context: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_transition_at: datetime = field(default_factory=datetime.utcnow)
    # Legacy status this state was converted from, if any
    legacy_status: Optional[str] = None

    def __post_init__(self):
        self.state_type = StateType(self.state_type)
        if not is_registered(self.state_type, self.context):
            raise UnknownStateException(self.state_type.value, self.context)

    @property
    def key(self) -> StateKey:
        return (self.state_type, self.context)

    @property
    def label(self) -> str:
        return f"{self.state_type.value}:{self.context}"

    @property
    def expected_inputs(self) -> List[str]:
        return EXPECTED_INPUTS[self.state_type][self.context]

    def transition_to(
        self,
        state_type: StateType,
        context: str,
        data: Optional[Dict[str, Any]] = None
    ) -> 'ConversationState':
        """Return the next state for this identity. Data is replaced wholesale."""
        return ConversationState(
            identity=self.identity,
            state_type=state_type,
            context=context,
            data=dict(data) if data else {},
            created_at=self.created_at,
            last_transition_at=datetime.utcnow(),
        )

    def with_data(self, **updates) -> 'ConversationState':
        """Return a copy in the same (type, context) with data keys updated."""
        return ConversationState(
            identity=self.identity,
            state_type=self.state_type,
            context=self.context,
            data={**self.data, **updates},
            created_at=self.created_at,
            last_transition_at=self.last_transition_at,
            legacy_status=self.legacy_status,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "identity": self.identity,
            "type": self.state_type.value,
            "context": self.context,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "last_transition_at": self.last_transition_at.isoformat(),
            "legacy_status": self.legacy_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConversationState':
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"state must be an object, got {type(data).__name__}")
        state_data = data.get("data") or {}
        if not isinstance(state_data, dict):
            raise TypeError(f"state data must be an object, got {type(state_data).__name__}")
        return cls(
            identity=data["identity"],
            state_type=StateType(data["type"]),
            context=data["context"],
            data=state_data,
            created_at=datetime.fromisoformat(data["created_at"]),
            last_transition_at=datetime.fromisoformat(data["last_transition_at"]),
            legacy_status=data.get("legacy_status"),
        )


def create_state(
    identity: str,
    state_type: StateType,
    context: str,
    data: Optional[Dict[str, Any]] = None
) -> ConversationState:
    """Create a fresh state. Raises UnknownStateException for unregistered pairs."""
    now = datetime.utcnow()
    return ConversationState(
        identity=identity,
        state_type=state_type,
        context=context,
        data=dict(data) if data else {},
        created_at=now,
        last_transition_at=now,
    )


def _bounded_index(text: str, upper: int) -> bool:
    return text.isdigit() and 1 <= int(text) <= upper


def is_valid_input(state: ConversationState, text: str) -> bool:
    """
    Check text against the state's registered expected inputs.

    Args:
        state: Current conversation state
        text: Sanitized user input

    Returns:
        True if the input matches an expected option or token
    """
    if not text:
        return False

    expected = state.expected_inputs
    if TEXT_INPUT in expected:
        return True

    lowered = text.lower()
    if lowered in expected:
        return True

    field_count = int(state.data.get("field_count", 0))
    if FIELD_INDEX in expected and _bounded_index(lowered, field_count):
        return True

    if FIELD_EDIT in expected:
        match = FIELD_EDIT_PATTERN.match(text)
        if match and _bounded_index(match.group(1), field_count):
            return True

    if ITEM_INDEX in expected and _bounded_index(lowered, len(state.data.get("items", []))):
        return True

    return False


def format_expected_inputs(state: ConversationState) -> List[str]:
    """Render the expected inputs as a display list ("1-5", "renovar", ...)."""
    options: List[str] = []
    numbers = [int(opt) for opt in state.expected_inputs if opt.isdigit()]
    if numbers:
        low, high = min(numbers), max(numbers)
        options.append(str(low) if low == high else f"{low}-{high}")

    field_count = int(state.data.get("field_count", 0))
    item_count = len(state.data.get("items", []))
    for opt in state.expected_inputs:
        if opt.isdigit():
            continue
        if opt == FIELD_INDEX:
            options.append(f"1-{field_count}")
        elif opt == FIELD_EDIT:
            options.append(f"<1-{field_count}> <value>")
        elif opt == ITEM_INDEX:
            options.append(f"1-{item_count}")
        else:
            options.append(opt)
    return options


def describe_state(state: ConversationState) -> str:
    """Human-readable label for a state."""
    return BREADCRUMB_LABELS.get(state.key, state.label)


class ConversationStateCodec:
    """Serializes ConversationState for the session store."""

    def encode(self, state: ConversationState) -> str:
        return json.dumps(state.to_dict())

    def decode(self, key: str, payload: str) -> ConversationState:
        try:
            return ConversationState.from_dict(json.loads(payload))
        except UnknownStateException as e:
            raise CorruptStateException(key, e.message, original_error=e)
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptStateException(key, str(e), original_error=e)
