"""Tests for the shared record types."""

from quillsync.models import (
    ChangeAction,
    ChangeRecord,
    ChangeResponse,
    SaveStep,
    build_change_key,
)


class TestChangeRecord:
    """Tests for ChangeRecord."""

    def test_storage_key(self):
        """Test the storage key is qualified by type."""
        record = ChangeRecord("note", "N0_1", ChangeAction.SAVE, 1000)
        assert record.storage_key == "note_N0_1"
        assert build_change_key("step", "S0_1") == "step_S0_1"

    def test_is_valid(self):
        """Test validation of type, action and key."""
        assert ChangeRecord("note", "N0_1", ChangeAction.SAVE, 1).is_valid()
        assert not ChangeRecord("bogus", "N0_1", ChangeAction.SAVE, 1).is_valid()
        assert not ChangeRecord("note", "", ChangeAction.SAVE, 1).is_valid()
        assert not ChangeRecord("note", "N0_1", None, 1).is_valid()

    def test_from_dict_unknown_action(self):
        """Test unknown actions are parsed as None."""
        record = ChangeRecord.from_dict(
            {"type": "note", "key": 5, "action": "update", "last_change": "1200"}
        )

        assert record.action is None
        assert record.key == "5"
        assert record.last_change == 1200
        assert not record.is_valid()

    def test_dict_roundtrip(self):
        """Test to_dict/from_dict roundtrip."""
        original = ChangeRecord("pref", "preferences", ChangeAction.DELETE, 42, {"a": 1})

        assert ChangeRecord.from_dict(original.to_dict()) == original


class TestChangeResponse:
    """Tests for ChangeResponse."""

    def test_new_key_defaults_to_key(self):
        """Test a saved entity keeps its key."""
        response = ChangeResponse.from_dict({"key": "N0_1", "action": "save", "done": True}, "note")

        assert response.entity_type == "note"
        assert response.done is True
        assert response.new_key == "N0_1"

    def test_new_key_from_result(self):
        """Test a key assigned by the backend."""
        response = ChangeResponse.from_dict(
            {"type": "anno", "key": "tmp-1", "action": "save", "done": 1, "result": {"new_key": 42}}
        )

        assert response.new_key == "42"

    def test_new_key_for_delete(self):
        """Test deleted entities have no key."""
        response = ChangeResponse("note", "N0_1", ChangeAction.DELETE, True)
        assert response.new_key is None

    def test_missing_done_is_false(self):
        """Test responses are not done by default."""
        response = ChangeResponse.from_dict({"key": "N0_1"}, "note")
        assert response.done is False


class TestSaveStep:
    """Tests for SaveStep keys."""

    def test_key(self):
        """Test the key combines index and task."""
        step = SaveStep(7, 3, True, 100, "@@", "a", "b")
        assert step.key == "S3_7"

    def test_parse_key(self):
        """Test parsing keys back to (task_id, index)."""
        assert SaveStep.parse_key("S3_7") == (7, 3)
        assert SaveStep.parse_key("N0_1") is None
        assert SaveStep.parse_key("S3") is None

    def test_from_dict(self):
        """Test loading a step from backend data."""
        step = SaveStep.from_dict(
            {"task_id": "2", "index": 0, "is_delta": 0, "timestamp": 99, "content": "Hi"}
        )

        assert step.task_id == 2
        assert step.is_delta is False
        assert step.hash_before == ""
        assert step.distance == 0
