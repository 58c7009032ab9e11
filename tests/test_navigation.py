"""
Unit tests for navigation history and the preserved-state store.
"""
import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.navigation import (
    NavigationHistory, PreservedStateStore, parse_navigation_command
)

IDENTITY = "525512345678"


@pytest.fixture
def history(clock):
    return NavigationHistory(max_depth=5, breadcrumb_items=3, clock=clock)


class TestNavigationHistory:
    """Tests for push/back/forward cursor semantics."""

    def test_back_then_push_discards_forward(self, history):
        """push A, push B, back, push C; forward has nothing left."""
        history.push(IDENTITY, "A", "A")
        history.push(IDENTITY, "B", "B")
        assert history.back(IDENTITY).state == "A"

        history.push(IDENTITY, "C", "C")

        assert history.forward(IDENTITY) is None
        assert history.current(IDENTITY).state == "C"
        assert history.breadcrumbs(IDENTITY) == ["A", "C"]

    def test_back_and_forward(self, history):
        history.push(IDENTITY, "A", "A")
        history.push(IDENTITY, "B", "B")
        history.back(IDENTITY)

        assert history.can_go_forward(IDENTITY)
        assert history.forward(IDENTITY).state == "B"
        assert not history.can_go_forward(IDENTITY)

    def test_back_at_start(self, history):
        assert history.back(IDENTITY) is None
        history.push(IDENTITY, "A", "A")
        assert history.back(IDENTITY) is None
        assert not history.can_go_back(IDENTITY)

    def test_max_depth_drops_oldest(self, history):
        for i in range(8):
            history.push(IDENTITY, f"S{i}", f"S{i}")

        assert history.get_stats()["total_entries"] == 5
        assert history.current(IDENTITY).state == "S7"
        for _ in range(4):
            history.back(IDENTITY)
        assert history.current(IDENTITY).state == "S3"
        assert history.back(IDENTITY) is None

    def test_push_copies_data(self, history):
        data = {"answers": {"a": "1"}}
        entry = history.push(IDENTITY, "A", "A", data)
        data["answers"] = {}
        assert entry.data == {"answers": {"a": "1"}}

    def test_histories_are_per_identity(self, history):
        history.push(IDENTITY, "A", "A")
        history.push("other", "B", "B")
        assert history.current(IDENTITY).state == "A"
        assert history.current("other").state == "B"


class TestBreadcrumbs:
    """Tests for breadcrumb rendering."""

    def test_last_three_up_to_cursor(self, history):
        for name in ["Main Menu", "New Permit", "Confirm Permit", "Payment"]:
            history.push(IDENTITY, name, name)
        history.back(IDENTITY)

        assert history.breadcrumbs(IDENTITY) == ["Main Menu", "New Permit", "Confirm Permit"]
        assert history.breadcrumb_text(IDENTITY, max_items=2) == "New Permit > Confirm Permit"

    def test_empty(self, history):
        assert history.breadcrumbs(IDENTITY) == []
        assert history.breadcrumb_text(IDENTITY) == ""


class TestUpdateAndCleanup:
    """Tests for snapshot refresh and idle cleanup."""

    def test_update_current_same_screen(self, history):
        history.push(IDENTITY, "form:new_permit", "New Permit", {"current_field": 0})
        assert history.update_current(IDENTITY, "form:new_permit", {"current_field": 1})
        assert history.current(IDENTITY).data == {"current_field": 1}

    def test_update_current_other_screen(self, history):
        history.push(IDENTITY, "menu:main", "Main Menu")
        assert not history.update_current(IDENTITY, "form:new_permit", {})
        assert not history.update_current("nobody", "menu:main", {})

    def test_cleanup_inactive(self, history, clock):
        history.push(IDENTITY, "A", "A")
        clock.advance(100)
        history.push("recent", "B", "B")
        clock.advance(50)

        assert history.cleanup_inactive(120) == 1
        assert history.current(IDENTITY) is None
        assert history.current("recent").state == "B"

    def test_home_discards_forward_branch(self, history):
        history.push(IDENTITY, "menu:main", "Main Menu")
        history.push(IDENTITY, "status:checking", "My Permits")
        history.back(IDENTITY)

        entry = history.home(IDENTITY, "menu:main", "Main Menu")

        assert entry.data == {}
        assert history.current(IDENTITY) is entry
        assert history.breadcrumbs(IDENTITY) == ["Main Menu", "Main Menu"]
        assert not history.can_go_forward(IDENTITY)

    def test_clear(self, history):
        history.push(IDENTITY, "A", "A")
        history.clear(IDENTITY)
        assert history.get_stats()["identities"] == 0


class TestPreservedStateStore:
    """Tests for the preserved-state scratch store."""

    def test_preserve_and_get(self):
        store = PreservedStateStore()
        store.preserve(IDENTITY, "form_data", {"current_field": 3})
        assert store.get(IDENTITY, "form_data") == {"current_field": 3}
        assert store.get(IDENTITY, "missing") is None

    def test_clear_single_key(self):
        store = PreservedStateStore()
        store.preserve(IDENTITY, "a", 1)
        store.preserve(IDENTITY, "b", 2)
        store.clear(IDENTITY, "a")

        assert store.get(IDENTITY, "a") is None
        assert store.get(IDENTITY, "b") == 2

    def test_clear_all(self):
        store = PreservedStateStore()
        store.preserve(IDENTITY, "a", 1)
        store.clear(IDENTITY)
        assert store.get_stats() == {"identities": 0, "preserved_keys": 0}


class TestParseNavigationCommand:
    """Tests for navigation command parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("atrás", "back"), ("REGRESAR", "back"), ("/inicio", "home"),
        ("adelante", "forward"), ("?", "help"), ("salir", "cancel"),
        ("estado", "status"), ("#menu", "home"),
    ])
    def test_aliases(self, text, expected):
        assert parse_navigation_command(text) == expected

    @pytest.mark.parametrize("text", ["", None, "hola", "3"])
    def test_not_a_command(self, text):
        assert parse_navigation_command(text) is None
