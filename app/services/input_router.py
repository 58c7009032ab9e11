"""
State Transition Router.

Maps (current state, sanitized text) to a routing decision. The same
literal text means different things depending on where the conversation
is ("3" can be a menu option, a field to edit, or an answer), so
decisions are taken from state metadata only.

Evaluation order:
1. Global commands (menu, help)
2. Context-scoped commands (form save/back/cancel, renewal keyword,
   status keyword, navigation back/forward)
3. Expected-input validation
4. Dispatch by state type

route() is deterministic and has no side effects apart from debug logging.
"""
import re
import logging
import unicodedata
from typing import Optional, Tuple, Dict
from dataclasses import dataclass
from enum import Enum

from app.services.conversation_state import (
    ConversationState, StateType, FIELD_EDIT_PATTERN,
    CONFIRM_WORDS, EDIT_WORDS, CANCEL_WORDS,
    is_valid_input, format_expected_inputs, describe_state
)
from app.services.navigation import parse_navigation_command

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 500

GLOBAL_COMMANDS: Dict[str, str] = {
    "menu": "menu",
    "menú": "menu",
    "inicio": "menu",
    "ayuda": "ayuda",
    "help": "ayuda",
    "soporte": "ayuda",
}

FORM_COMMANDS: Dict[str, str] = {
    "save": "save",
    "guardar": "save",
    "back": "back",
    "atras": "back",
    "atrás": "back",
    "regresar": "back",
    "volver": "back",
    "cancel": "cancel",
    "cancelar": "cancel",
}

RENEWAL_COMMANDS: Dict[str, str] = {
    "renovar": "renovar",
    "renewal": "renovar",
    "renovación": "renovar",
    "renovacion": "renovar",
}

STATUS_COMMANDS: Dict[str, str] = {
    "estado": "estado",
    "status": "estado",
    "mis-permisos": "estado",
}

MAIN_MENU_WORDS: Dict[str, int] = {
    "nuevo": 1,
    "permiso": 1,
    "renovar": 2,
    "estado": 3,
    "privacidad": 4,
}

HELP_NAVIGATION: Dict[str, str] = {
    "menu": "menu",
    "back": "back",
    "atras": "back",
    "atrás": "back",
    "continue": "continue",
    "continuar": "continue",
}

RENEWAL_CONTEXTS = {
    (StateType.MENU, "renewal"),
    (StateType.FORM, "renewal_edit"),
    (StateType.CONFIRMATION, "renewal_data"),
}

NAVIGABLE_TYPES = {StateType.MENU, StateType.STATUS, StateType.CONFIRMATION}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")
_SINGLE_DIGIT = re.compile(r"^[1-9]$")
_COMMAND_PREFIXES = "/!#"


class RouteKind(str, Enum):
    """Kinds of routing decision."""
    GLOBAL_COMMAND = "global_command"
    NO_STATE = "no_state"
    CONTEXT_COMMAND = "context_command"
    INVALID_INPUT = "invalid_input"
    MENU_SELECTION = "menu_selection"
    FIELD_SELECTION = "field_selection"
    FORM_TEXT_INPUT = "form_text_input"
    DIRECT_EDIT = "direct_edit"
    CONFIRMATION_OPTION = "confirmation_option"
    CONFIRMATION_ACTION = "confirmation_action"
    STATUS_OPTION = "status_option"
    ITEM_SELECTION = "item_selection"
    HELP_NAVIGATION = "help_navigation"
    HELP_QUERY = "help_query"
    ERROR_RECOVERY = "error_recovery"
    NOTIFICATION_RESPONSE = "notification_response"


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of routing one input."""
    kind: RouteKind
    command: Optional[str] = None
    option: Optional[int] = None
    value: Optional[str] = None
    preserve_state: bool = False
    valid_options: Tuple[str, ...] = ()
    state_description: Optional[str] = None


def sanitize_input(text: Optional[str], max_length: int = MAX_INPUT_LENGTH) -> str:
    """NFC-normalize, drop control characters, collapse whitespace, trim and cap."""
    if not text:
        return ""
    cleaned = unicodedata.normalize("NFC", str(text))
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length].rstrip()


def _command_token(text: str) -> str:
    return text.lower().lstrip(_COMMAND_PREFIXES)


def _log_resolution(state: ConversationState, text: str, rule: str) -> None:
    logger.debug(
        f"Resolved '{text}' in {state.label} as {rule}",
        extra={"extra_fields": {
            "event": "routing_ambiguity_resolved",
            "state": state.label,
            "rule": rule,
        }}
    )


def _context_command(state: ConversationState, token: str) -> Optional[str]:
    if state.state_type == StateType.FORM and token in FORM_COMMANDS:
        return FORM_COMMANDS[token]
    if state.key in RENEWAL_CONTEXTS and token in RENEWAL_COMMANDS:
        return RENEWAL_COMMANDS[token]
    if state.state_type != StateType.FORM and token in STATUS_COMMANDS:
        return STATUS_COMMANDS[token]
    if state.state_type in NAVIGABLE_TYPES:
        navigation = parse_navigation_command(token)
        if navigation in ("back", "forward"):
            return navigation
    return None


def _route_menu(state: ConversationState, text: str) -> RoutingDecision:
    lowered = text.lower()
    if lowered.isdigit():
        _log_resolution(state, text, "menu_option")
        return RoutingDecision(RouteKind.MENU_SELECTION, option=int(lowered))
    return RoutingDecision(RouteKind.MENU_SELECTION, option=MAIN_MENU_WORDS[lowered], command=lowered)


def _route_form(state: ConversationState, text: str) -> RoutingDecision:
    if state.context == "renewal_edit" and _SINGLE_DIGIT.match(text):
        _log_resolution(state, text, "field_selection")
        return RoutingDecision(RouteKind.FIELD_SELECTION, option=int(text))
    if text.isdigit():
        _log_resolution(state, text, "literal_answer")
    return RoutingDecision(RouteKind.FORM_TEXT_INPUT, value=text)


def _route_confirmation(state: ConversationState, text: str) -> RoutingDecision:
    lowered = text.lower()
    if lowered.isdigit():
        if state.context == "permit_data":
            _log_resolution(state, text, "field_selection")
            return RoutingDecision(RouteKind.FIELD_SELECTION, option=int(lowered))
        _log_resolution(state, text, "confirmation_option")
        return RoutingDecision(RouteKind.CONFIRMATION_OPTION, option=int(lowered))

    match = FIELD_EDIT_PATTERN.match(text)
    if state.context == "permit_data" and match:
        _log_resolution(state, text, "direct_edit")
        return RoutingDecision(RouteKind.DIRECT_EDIT, option=int(match.group(1)), value=match.group(2))

    if lowered in CONFIRM_WORDS:
        return RoutingDecision(RouteKind.CONFIRMATION_ACTION, command="confirm")
    if lowered in EDIT_WORDS:
        return RoutingDecision(RouteKind.CONFIRMATION_ACTION, command="edit")
    return RoutingDecision(RouteKind.CONFIRMATION_ACTION, command="cancel")


def _route_status(state: ConversationState, text: str) -> RoutingDecision:
    lowered = text.lower()
    if lowered.isdigit():
        kind = RouteKind.ITEM_SELECTION if state.context == "selecting" else RouteKind.STATUS_OPTION
        return RoutingDecision(kind, option=int(lowered))
    return RoutingDecision(RouteKind.STATUS_OPTION, command=lowered)


def _route_help(state: ConversationState, text: str) -> RoutingDecision:
    lowered = text.lower()
    if lowered in HELP_NAVIGATION:
        return RoutingDecision(RouteKind.HELP_NAVIGATION, command=HELP_NAVIGATION[lowered])
    return RoutingDecision(RouteKind.HELP_QUERY, value=text)


def _route_error(state: ConversationState, text: str) -> RoutingDecision:
    if text.isdigit():
        return RoutingDecision(RouteKind.ERROR_RECOVERY, option=int(text))
    return RoutingDecision(RouteKind.ERROR_RECOVERY, value=text)


def _route_notification(state: ConversationState, text: str) -> RoutingDecision:
    return RoutingDecision(RouteKind.NOTIFICATION_RESPONSE, value=text)


_DISPATCH = {
    StateType.MENU: _route_menu,
    StateType.FORM: _route_form,
    StateType.CONFIRMATION: _route_confirmation,
    StateType.STATUS: _route_status,
    StateType.HELP: _route_help,
    StateType.ERROR: _route_error,
    StateType.NOTIFICATION: _route_notification,
}


def route(state: Optional[ConversationState], text: str) -> RoutingDecision:
    """
    Resolve what an input means in the current state.

    Args:
        state: Current conversation state, or None when no session exists
        text: Sanitized input

    Returns:
        RoutingDecision for the flow handlers
    """
    token = _command_token(text)

    if token in GLOBAL_COMMANDS:
        command = GLOBAL_COMMANDS[token]
        return RoutingDecision(
            RouteKind.GLOBAL_COMMAND,
            command=command,
            preserve_state=command == "ayuda"
        )

    if state is None:
        return RoutingDecision(RouteKind.NO_STATE)

    command = _context_command(state, token)
    if command:
        return RoutingDecision(RouteKind.CONTEXT_COMMAND, command=command)

    if not is_valid_input(state, text):
        logger.info(
            f"Invalid input for {state.label}",
            extra={"extra_fields": {"event": "invalid_input", "state": state.label}}
        )
        return RoutingDecision(
            RouteKind.INVALID_INPUT,
            value=text,
            valid_options=tuple(format_expected_inputs(state)),
            state_description=describe_state(state)
        )

    return _DISPATCH[state.state_type](state, text)
