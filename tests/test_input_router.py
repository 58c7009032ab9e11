"""
Unit tests for the state transition router.
Tests priority order, disambiguation of numeric input and sanitization.
"""
import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.conversation_state import EXPECTED_INPUTS, StateType, create_state
from app.services.input_router import RouteKind, route, sanitize_input

IDENTITY = "525512345678"


def make(state_type, context, **data):
    return create_state(IDENTITY, state_type, context, data)


class TestSanitizeInput:
    """Tests for input sanitization."""

    def test_trims_and_collapses_whitespace(self):
        assert sanitize_input("  hola   mundo \n") == "hola mundo"

    def test_strips_control_characters(self):
        assert sanitize_input("ab\x00c\x07d") == "abcd"

    def test_caps_length(self):
        assert len(sanitize_input("x" * 600)) == 500
        assert sanitize_input("abcdef", max_length=3) == "abc"

    def test_nfc_normalization(self):
        decomposed = "atra\u0301s"
        assert sanitize_input(decomposed) == "atr\u00e1s"

    def test_none(self):
        assert sanitize_input(None) == ""


class TestGlobalCommands:
    """Global commands win over every state."""

    @pytest.mark.parametrize("text", ["menu", "MENÚ", "inicio", "/menu", "!menu"])
    def test_menu_aliases(self, text):
        decision = route(make(StateType.FORM, "new_permit"), text)
        assert decision.kind == RouteKind.GLOBAL_COMMAND
        assert decision.command == "menu"

    def test_help_preserves_state(self):
        decision = route(make(StateType.CONFIRMATION, "payment"), "ayuda")
        assert decision.kind == RouteKind.GLOBAL_COMMAND
        assert decision.command == "ayuda"
        assert decision.preserve_state is True

    def test_global_without_state(self):
        assert route(None, "help").kind == RouteKind.GLOBAL_COMMAND

    def test_no_state(self):
        """Any non-command text without a session asks for a fresh state."""
        assert route(None, "hola").kind == RouteKind.NO_STATE


class TestContextCommands:
    """Context-scoped commands beat generic parsing."""

    @pytest.mark.parametrize("text,command", [
        ("guardar", "save"), ("atrás", "back"), ("volver", "back"), ("cancelar", "cancel"),
    ])
    def test_form_commands(self, text, command):
        decision = route(make(StateType.FORM, "new_permit"), text)
        assert decision.kind == RouteKind.CONTEXT_COMMAND
        assert decision.command == command

    def test_renewal_keyword_in_renewal_context(self):
        decision = route(make(StateType.FORM, "renewal_edit", flow="renewal"), "renovación")
        assert decision.kind == RouteKind.CONTEXT_COMMAND
        assert decision.command == "renovar"

    def test_renewal_keyword_on_main_menu_is_an_option(self):
        decision = route(make(StateType.MENU, "main"), "renovar")
        assert decision.kind == RouteKind.MENU_SELECTION
        assert decision.option == 2

    def test_status_keyword_outside_forms(self):
        decision = route(make(StateType.CONFIRMATION, "payment"), "mis-permisos")
        assert decision.kind == RouteKind.CONTEXT_COMMAND
        assert decision.command == "estado"

    def test_status_keyword_inside_form_is_an_answer(self):
        decision = route(make(StateType.FORM, "new_permit"), "estado")
        assert decision.kind == RouteKind.FORM_TEXT_INPUT
        assert decision.value == "estado"

    def test_navigation_back_in_menu(self):
        decision = route(make(StateType.MENU, "privacy"), "regresar")
        assert decision.kind == RouteKind.CONTEXT_COMMAND
        assert decision.command == "back"

    def test_navigation_forward_in_status(self):
        decision = route(make(StateType.STATUS, "checking"), "adelante")
        assert decision.command == "forward"


class TestInvalidInput:
    """Inputs outside the expected set never fall through."""

    def test_invalid_carries_options(self):
        state = make(StateType.MENU, "privacy")
        decision = route(state, "7")

        assert decision.kind == RouteKind.INVALID_INPUT
        assert decision.valid_options == ("1-3",)
        assert decision.state_description == "Privacy"

    def test_invalid_for_every_numeric_state(self):
        """For every state that does not take free text, an unknown word is invalid."""
        for state_type, contexts in EXPECTED_INPUTS.items():
            for context, expected in contexts.items():
                if "<text>" in expected:
                    continue
                state = make(state_type, context, field_count=10, items=[{}])
                before = state.to_dict()
                decision = route(state, "zzzz")
                assert decision.kind == RouteKind.INVALID_INPUT, state.label
                assert state.to_dict() == before

    def test_field_index_out_of_range(self):
        decision = route(make(StateType.CONFIRMATION, "permit_data", field_count=10), "11")
        assert decision.kind == RouteKind.INVALID_INPUT


class TestNumericDisambiguation:
    """The same "3" means different things depending on state."""

    def test_three_in_menu(self):
        decision = route(make(StateType.MENU, "main"), "3")
        assert decision.kind == RouteKind.MENU_SELECTION
        assert decision.option == 3

    def test_three_in_renewal_edit(self):
        decision = route(make(StateType.FORM, "renewal_edit", flow="renewal"), "3")
        assert decision.kind == RouteKind.FIELD_SELECTION
        assert decision.option == 3

    def test_three_in_new_permit(self):
        decision = route(make(StateType.FORM, "new_permit"), "3")
        assert decision.kind == RouteKind.FORM_TEXT_INPUT
        assert decision.value == "3"

    def test_three_in_permit_confirmation(self):
        decision = route(make(StateType.CONFIRMATION, "permit_data", field_count=10), "3")
        assert decision.kind == RouteKind.FIELD_SELECTION

    def test_three_in_renewal_confirmation(self):
        decision = route(make(StateType.CONFIRMATION, "renewal_data", field_count=9), "3")
        assert decision.kind == RouteKind.CONFIRMATION_OPTION
        assert decision.option == 3

    def test_three_in_status_selecting(self):
        decision = route(make(StateType.STATUS, "selecting", items=[{}, {}, {}]), "3")
        assert decision.kind == RouteKind.ITEM_SELECTION

    def test_deterministic(self):
        state = make(StateType.FORM, "renewal_edit", flow="renewal")
        assert route(state, "3") == route(state, "3")


class TestTypeDispatch:
    """Tests for per-type dispatch."""

    def test_direct_edit(self):
        decision = route(make(StateType.CONFIRMATION, "permit_data", field_count=10), "4 Toyota")
        assert decision.kind == RouteKind.DIRECT_EDIT
        assert decision.option == 4
        assert decision.value == "Toyota"

    @pytest.mark.parametrize("text,command", [("sí", "confirm"), ("editar", "edit"), ("no", "cancel")])
    def test_confirmation_words(self, text, command):
        decision = route(make(StateType.CONFIRMATION, "permit_data", field_count=10), text)
        assert decision.kind == RouteKind.CONFIRMATION_ACTION
        assert decision.command == command

    def test_status_words(self):
        decision = route(make(StateType.STATUS, "checking"), "crear")
        assert decision.kind == RouteKind.STATUS_OPTION
        assert decision.command == "crear"

    def test_help_navigation_and_query(self):
        state = make(StateType.HELP, "general")
        assert route(state, "continuar").kind == RouteKind.HELP_NAVIGATION
        query = route(state, "¿cuánto cuesta?")
        assert query.kind == RouteKind.HELP_QUERY

    def test_error_recovery(self):
        decision = route(make(StateType.ERROR, "rate_limit"), "1")
        assert decision.kind == RouteKind.ERROR_RECOVERY
        assert decision.option == 1

    def test_notification(self):
        assert route(make(StateType.NOTIFICATION, "delivery"), "gracias").kind == RouteKind.NOTIFICATION_RESPONSE
