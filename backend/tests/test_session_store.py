"""Tests for the in-memory BuildSessionRegistry."""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from types import SimpleNamespace

from api.session_store import BuildSessionRegistry


class TestBuildSessionRegistry:
    def setup_method(self):
        self.registry = BuildSessionRegistry()

    def test_add_and_get(self):
        session = SimpleNamespace(form_id="form-1")
        assert self.registry.add(session) is session
        assert self.registry.get("form-1") is session

    def test_get_nonexistent_returns_none(self):
        assert self.registry.get("nonexistent") is None

    def test_add_keeps_existing_session(self):
        """A second session for the same form loses to the registered one."""
        first = SimpleNamespace(form_id="form-1")
        second = SimpleNamespace(form_id="form-1")
        self.registry.add(first)
        assert self.registry.add(second) is first
        assert self.registry.get("form-1") is first

    def test_delete(self):
        self.registry.add(SimpleNamespace(form_id="form-2"))
        self.registry.delete("form-2")
        assert self.registry.get("form-2") is None

    def test_delete_nonexistent_is_noop(self):
        self.registry.delete("ghost-form")

    def test_form_ids_and_clear(self):
        self.registry.add(SimpleNamespace(form_id="a"))
        self.registry.add(SimpleNamespace(form_id="b"))
        assert sorted(self.registry.form_ids()) == ["a", "b"]
        self.registry.clear()
        assert self.registry.form_ids() == []
