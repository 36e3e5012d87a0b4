"""Tests for execution state helpers and StateView."""

import pytest

from adaptflow.exceptions import StateAccessError
from adaptflow.graph.state import StateView, get_errors, merge_state, record_error


class TestMergeState:
    def test_returned_keys_win(self):
        assert merge_state({"a": 1, "b": 1}, {"b": 2}) == {"a": 1, "b": 2}

    def test_none_update_copies(self):
        previous = {"a": 1}
        merged = merge_state(previous, None)

        assert merged == previous
        assert merged is not previous


class TestRecordError:
    def test_appends_entry_without_mutating(self):
        original = {"errors": [{"step": "x", "error": "old"}], "value": 1}

        updated = record_error(original, "parse", ValueError("bad input"))

        assert len(original["errors"]) == 1
        assert updated["value"] == 1
        entry = updated["errors"][-1]
        assert entry["step"] == "parse"
        assert entry["error"] == "bad input"
        assert entry["error_type"] == "ValueError"
        assert "T" in entry["timestamp"]

    def test_get_errors_on_clean_state(self):
        assert get_errors({}) == []
        assert get_errors({"errors": None}) == []


class TestStateView:
    """Reads and writes are checked against the step's declarations."""

    def test_unrestricted_when_nothing_declared(self):
        view = StateView({"a": 1}, "step")
        view["b"] = 2

        assert view["a"] == 1
        assert view.updates == {"b": 2}

    def test_undeclared_read_raises(self):
        view = StateView({"a": 1, "secret": 2}, "step", reads=["a"])

        assert view["a"] == 1
        with pytest.raises(StateAccessError) as exc_info:
            view["secret"]
        assert exc_info.value.key == "secret"
        assert exc_info.value.mode == "read"

    def test_undeclared_write_raises(self):
        view = StateView({}, "step", writes=["summary"])

        view["summary"] = "ok"
        with pytest.raises(StateAccessError):
            view["other"] = 1

    def test_step_reads_back_its_own_writes(self):
        view = StateView({"a": 1}, "step", reads=["a"], writes=["b"])
        view.set("b", 5)

        assert view["b"] == 5
        assert "b" in view

    def test_iteration_hides_undeclared_keys(self):
        view = StateView({"a": 1, "hidden": 2}, "step", reads=["a"])

        assert list(view) == ["a"]
        assert len(view) == 1
        assert "hidden" not in view
        assert dict(view) == {"a": 1}

    def test_updates_is_a_copy(self):
        view = StateView({}, "step")
        view["x"] = 1
        view.updates["y"] = 2

        assert view.updates == {"x": 1}

    def test_check_writes(self):
        view = StateView({}, "step", writes=["a"])
        view.check_writes({"a": 1})

        with pytest.raises(StateAccessError):
            view.check_writes({"a": 1, "b": 2})
