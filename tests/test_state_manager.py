"""
Tests for the document store.
"""

import json
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from program_engine.engine.state_manager import StateManager
from program_engine.exceptions import ConflictError
from program_engine.models import Process, Program, Stage, UserRecord

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestStateManager:
    """Test cases for StateManager in memory."""

    @pytest.fixture
    def state_manager(self):
        return StateManager()

    def test_put_and_get(self, state_manager):
        user = UserRecord(name="Ada", email="ada@example.com")
        state_manager.put("users", user)

        assert state_manager.get_user(user.id) is user
        assert state_manager.get_user_by_email("ADA@example.com") is user
        assert state_manager.get_user(None) is None

    def test_program_slug_unique(self, state_manager):
        state_manager.insert_program(Program(name="A", slug="intake", start_date=START))

        with pytest.raises(ConflictError, match="Program slug already exists."):
            state_manager.insert_program(Program(name="B", slug="intake", start_date=START))

        assert len(state_manager.query("programs")) == 1

    def test_reinserting_same_program_is_allowed(self, state_manager):
        program = state_manager.insert_program(Program(name="A", slug="intake", start_date=START))
        program.name = "A2"

        state_manager.insert_program(program)

        assert state_manager.find_program_by_slug("intake").name == "A2"

    def test_one_active_process_per_user_and_program(self, state_manager):
        state_manager.insert_process(Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1"))

        with pytest.raises(ConflictError):
            state_manager.insert_process(
                Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1")
            )

        state_manager.insert_process(Process(user_id="u1", program_id="p2", type="survey", current_stage_id="s1"))
        state_manager.insert_process(Process(user_id="u2", program_id="p1", type="survey", current_stage_id="s1"))

    def test_deleted_process_does_not_block(self, state_manager):
        first = state_manager.insert_process(
            Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1")
        )
        first.is_deleted = True

        state_manager.insert_process(Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1"))
        assert state_manager.find_active_process("u1", "p1").id != first.id

    def test_transaction_rolls_back(self, state_manager):
        user = UserRecord(name="Ada", email="ada@example.com")
        state_manager.put("users", user)

        with pytest.raises(RuntimeError):
            with state_manager.transaction():
                state_manager.get_user(user.id).system_role = "admin"
                state_manager.put("stages", Stage(program_id="p1", name="Temp"))
                raise RuntimeError("abort")

        assert state_manager.get_user(user.id).system_role == "guest"
        assert state_manager.query("stages") == []

    def test_nested_transaction_joins_outer(self, state_manager):
        with pytest.raises(ConflictError):
            with state_manager.transaction():
                state_manager.insert_program(Program(name="A", slug="intake", start_date=START))
                state_manager.insert_program(Program(name="B", slug="intake", start_date=START))

        assert state_manager.query("programs") == []

    def test_reads_from_other_threads_wait_for_open_transaction(self, state_manager):
        results = []
        with pytest.raises(RuntimeError):
            with state_manager.transaction():
                state_manager.insert_process(
                    Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1")
                )
                reader = threading.Thread(
                    target=lambda: results.append(state_manager.find_active_process("u1", "p1"))
                )
                reader.start()
                reader.join(timeout=0.2)
                assert reader.is_alive()
                raise RuntimeError("abort")

        reader.join(timeout=5)
        assert results == [None]
        assert state_manager.query("processes") == []

    def test_concurrent_reads_during_inserts(self, state_manager):
        errors = []
        done = threading.Event()

        def read():
            while not done.is_set():
                try:
                    state_manager.find_active_process("nobody", "p1")
                    state_manager.get_user_by_email("nobody@example.com")
                    state_manager.get_summary()
                except RuntimeError as e:
                    errors.append(e)

        readers = [threading.Thread(target=read) for _ in range(4)]
        for reader in readers:
            reader.start()
        for index in range(100):
            state_manager.insert_process(
                Process(user_id=f"u{index}", program_id="p1", type="survey", current_stage_id="s1")
            )
            state_manager.put("users", UserRecord(name=f"User {index}", email=f"u{index}@example.com"))
        done.set()
        for reader in readers:
            reader.join(timeout=5)

        assert errors == []
        assert len(state_manager.query("processes")) == 100

    def test_summary(self, state_manager):
        state_manager.insert_process(Process(user_id="u1", program_id="p1", type="survey", current_stage_id="s1"))
        done = state_manager.insert_process(
            Process(user_id="u2", program_id="p1", type="survey", current_stage_id="s1", status="completed")
        )
        state_manager.put("users", UserRecord(name="Ada", email="ada@example.com"))

        summary = state_manager.get_summary()

        assert summary["processes"] == 2
        assert summary["users"] == 1
        assert summary["processes_by_status"] == {"in_progress": 1, "completed": 1}
        assert done.status == "completed"


@pytest.mark.integration
class TestStatePersistence:
    """Integration tests for JSON persistence."""

    @pytest.fixture
    def temp_state_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir) / "state" / "program_state.json"

    def test_state_survives_restart(self, temp_state_file):
        state_mgr = StateManager(temp_state_file)
        program = state_mgr.insert_program(Program(name="Intake", slug="intake", start_date=START))
        state_mgr.put("stages", Stage(program_id=program.id, name="Apply",
                                      config={"form_config": [{"id": "name", "required": True}]}))

        state_mgr2 = StateManager(temp_state_file)

        restored = state_mgr2.find_program_by_slug("intake")
        assert restored.id == program.id
        assert restored.start_date == START
        stage = state_mgr2.query("stages")[0]
        assert stage.form_config[0].required is True

    def test_file_format(self, temp_state_file):
        StateManager(temp_state_file).put("users", UserRecord(id="u1", name="Ada", email="ada@example.com"))

        data = json.loads(temp_state_file.read_text())
        assert data["users"]["u1"]["email"] == "ada@example.com"
        assert "last_updated" in data

    def test_rolled_back_changes_not_saved(self, temp_state_file):
        state_mgr = StateManager(temp_state_file)
        state_mgr.insert_program(Program(name="Intake", slug="intake", start_date=START))

        with pytest.raises(ConflictError):
            state_mgr.insert_program(Program(name="Dup", slug="intake", start_date=START))

        assert len(StateManager(temp_state_file).query("programs")) == 1
