"""
Unit tests for the conversation state model and its registry.
"""
import pytest
import json
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.middleware.error_handling import UnknownStateException, CorruptStateException
from app.services.conversation_state import (
    ConversationState, ConversationStateCodec, StateType,
    EXPECTED_INPUTS, BREADCRUMB_LABELS, TRANSITIONS, MENU_MAX_OPTIONS,
    create_state, is_registered, is_transition_allowed, is_valid_input,
    format_expected_inputs, describe_state
)

IDENTITY = "525512345678"


class TestRegistry:
    """Tests for the expected-input registry."""

    def test_every_pair_has_label_and_transitions(self):
        """Each registered pair has a breadcrumb label and a transition row."""
        for state_type, contexts in EXPECTED_INPUTS.items():
            for context in contexts:
                assert (state_type, context) in BREADCRUMB_LABELS
                assert (state_type, context) in TRANSITIONS

    def test_transition_targets_are_registered(self):
        for targets in TRANSITIONS.values():
            for state_type, context in targets:
                assert is_registered(state_type, context)

    def test_menu_maxima(self):
        for context, maximum in MENU_MAX_OPTIONS.items():
            state = create_state(IDENTITY, StateType.MENU, context)
            assert is_valid_input(state, str(maximum))
            assert not is_valid_input(state, str(maximum + 1))
            assert not is_valid_input(state, "0")

    def test_unregistered_pair_rejected(self):
        with pytest.raises(UnknownStateException):
            create_state(IDENTITY, StateType.MENU, "nowhere")

    def test_string_type_coerced(self):
        state = ConversationState(identity=IDENTITY, state_type="menu", context="main")
        assert state.state_type is StateType.MENU


class TestTransitions:
    """Tests for the transition table."""

    def test_listed_transition(self):
        assert is_transition_allowed((StateType.FORM, "new_permit"), (StateType.CONFIRMATION, "permit_data"))

    def test_global_targets_always_allowed(self):
        assert is_transition_allowed((StateType.CONFIRMATION, "payment"), (StateType.MENU, "main"))
        assert is_transition_allowed((StateType.FORM, "new_permit"), (StateType.HELP, "form_help"))

    def test_unlisted_transition(self):
        assert not is_transition_allowed((StateType.MENU, "privacy"), (StateType.CONFIRMATION, "payment"))


class TestStateLifecycle:
    """Tests for transitions and data handling on the dataclass."""

    def test_transition_keeps_created_at_and_replaces_data(self):
        state = create_state(IDENTITY, StateType.MENU, "main", {"x": 1})
        state.legacy_status = "showing_menu"
        nxt = state.transition_to(StateType.FORM, "new_permit", {"answers": {}})

        assert nxt.created_at == state.created_at
        assert nxt.data == {"answers": {}}
        assert nxt.legacy_status is None
        assert nxt.last_transition_at >= state.last_transition_at

    def test_with_data_merges(self):
        state = create_state(IDENTITY, StateType.FORM, "new_permit", {"answers": {"a": "1"}, "current_field": 1})
        updated = state.with_data(current_field=2)

        assert updated.data == {"answers": {"a": "1"}, "current_field": 2}
        assert state.data["current_field"] == 1

    def test_label_and_description(self):
        state = create_state(IDENTITY, StateType.FORM, "renewal_edit")
        assert state.label == "form:renewal_edit"
        assert describe_state(state) == "Renewal Changes"
        assert describe_state(create_state(IDENTITY, StateType.MENU, "main")) == "Main Menu"


class TestExpectedInputs:
    """Tests for input validation against the registry."""

    def test_text_states_accept_anything(self):
        state = create_state(IDENTITY, StateType.FORM, "new_permit")
        assert is_valid_input(state, "whatever I want")

    def test_empty_input_never_valid(self):
        state = create_state(IDENTITY, StateType.FORM, "new_permit")
        assert not is_valid_input(state, "")

    def test_words_case_insensitive(self):
        state = create_state(IDENTITY, StateType.MENU, "main")
        assert is_valid_input(state, "Renovar")
        assert not is_valid_input(state, "hola")

    def test_field_index_bounded_by_field_count(self):
        state = create_state(IDENTITY, StateType.CONFIRMATION, "permit_data", {"field_count": 10})
        assert is_valid_input(state, "10")
        assert not is_valid_input(state, "11")

    def test_field_edit_pattern(self):
        state = create_state(IDENTITY, StateType.CONFIRMATION, "permit_data", {"field_count": 10})
        assert is_valid_input(state, "4 Toyota")
        assert not is_valid_input(state, "12 Toyota")

    def test_item_index_bounded_by_items(self):
        state = create_state(IDENTITY, StateType.STATUS, "selecting", {"items": [{}, {}]})
        assert is_valid_input(state, "2")
        assert not is_valid_input(state, "3")

    def test_format_expected_inputs(self):
        menu = create_state(IDENTITY, StateType.MENU, "main")
        assert format_expected_inputs(menu)[0] == "1-5"
        assert "renovar" in format_expected_inputs(menu)

        confirmation = create_state(IDENTITY, StateType.CONFIRMATION, "permit_data", {"field_count": 10})
        rendered = format_expected_inputs(confirmation)
        assert rendered[:2] == ["1-10", "<1-10> <value>"]


class TestCodec:
    """Tests for state serialization."""

    def test_encode_decode(self):
        codec = ConversationStateCodec()
        state = create_state(IDENTITY, StateType.STATUS, "checking", {"items": [{"id": "a"}]})
        state.legacy_status = "checking_status"

        assert codec.decode("k", codec.encode(state)) == state

    def test_decode_missing_field(self):
        with pytest.raises(CorruptStateException):
            ConversationStateCodec().decode("k", json.dumps({"identity": IDENTITY}))

    def test_decode_bad_timestamp(self):
        payload = create_state(IDENTITY, StateType.MENU, "main").to_dict()
        payload["created_at"] = "yesterday"
        with pytest.raises(CorruptStateException):
            ConversationStateCodec().decode("k", json.dumps(payload))

    def test_decode_unknown_type(self):
        payload = create_state(IDENTITY, StateType.MENU, "main").to_dict()
        payload["type"] = "wizard"
        with pytest.raises(CorruptStateException):
            ConversationStateCodec().decode("k", json.dumps(payload))
