"""
Tests for block instances: validation, versioning, copying and
viewer-specific presentation.
"""

import copy

import pytest

from program_engine.blocks import BLOCK_CONFIG_MODELS, validate_block_config
from program_engine.exceptions import (
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)

QUIZ_CONFIG = {
    "label": "Warm-up",
    "questions": [{"text": "2 + 2?", "options": ["3", "4"], "correct_answer": "4"}],
}
RUBRIC_CONFIG = {"criteria": [{"id": "clarity", "label": "Clarity", "max_score": 5}]}
GATE_CONFIG = {"passcode": "open-sesame", "message": "Enter the code from your invite"}


class TestBlockConfigValidation:
    """Test cases for per-type config models."""

    def test_every_registered_type_has_a_model(self):
        assert len(BLOCK_CONFIG_MODELS) == 18
        assert "access_gate" in BLOCK_CONFIG_MODELS

    def test_valid_config(self):
        assert validate_block_config("quiz", QUIZ_CONFIG) == []

    def test_unknown_keys_rejected(self):
        errors = validate_block_config("content", {"html": "<p>Hi</p>", "colour": "red"})
        assert len(errors) == 1
        assert errors[0].startswith("content.colour")

    def test_wrong_literal_rejected(self):
        assert validate_block_config("form_input", {"type": "colour-picker"})

    @pytest.mark.parametrize("config", [None, "text", ["a"]])
    def test_non_object_config_rejected(self, config):
        assert validate_block_config("content", config) == ["Block config for 'content' must be an object"]

    def test_unregistered_type_accepted(self):
        assert validate_block_config("custom_widget", {"anything": 1}) == []


class TestBlockService:
    """Test cases for block creation and versioning."""

    def test_create_block(self, engine, admin):
        block = engine.blocks.create_block(admin, "quiz", QUIZ_CONFIG, name="Warm-up quiz")

        assert block.version == 1
        assert block.parent_id is None
        assert engine.state_manager.get_block(block.id).name == "Warm-up quiz"
        assert engine.audit_logger.get_events(action="block.create")[0].entity_id == block.id

    def test_create_requires_capability(self, engine, manager):
        with pytest.raises(ForbiddenError):
            engine.blocks.create_block(manager, "content", {"html": "<p>Hi</p>"})

    def test_invalid_config_rejected(self, engine, admin):
        with pytest.raises(ValidationError) as exc_info:
            engine.blocks.create_block(admin, "quiz", {"questions": "none"})
        assert exc_info.value.errors

        with pytest.raises(ValidationError):
            engine.blocks.create_block(admin, "quiz", None)

    def test_batch_is_all_or_nothing(self, engine, admin):
        with pytest.raises(ValidationError) as exc_info:
            engine.blocks.create_blocks_batch(admin, [
                {"type": "content", "config": {"html": "<p>Hi</p>"}},
                {"type": "checklist", "config": {"items": "nope"}},
                {"config": {}},
            ])

        errors = exc_info.value.errors
        assert any(e.startswith("[1] checklist.items") for e in errors)
        assert "[2] Block type is required" in errors
        assert engine.state_manager.query("blocks") == []

    def test_batch_creates_all(self, engine, admin):
        created = engine.blocks.create_blocks_batch(admin, [
            {"type": "content", "config": {"html": "<p>Hi</p>"}, "name": "Intro"},
            {"type": "signature", "config": {"agreement_text": "I agree"}},
        ])

        assert [b.type for b in created] == ["content", "signature"]
        assert len(engine.state_manager.query("blocks")) == 2

    def test_update_bumps_version(self, engine, admin):
        block = engine.blocks.create_block(admin, "content", {"html": "<p>v1</p>"})

        engine.blocks.update_block(admin, block.id, name="Intro")
        updated = engine.blocks.update_block(admin, block.id, config={"html": "<p>v2</p>"})

        assert updated.version == 3
        assert updated.name == "Intro"
        assert updated.config == {"html": "<p>v2</p>"}

    def test_update_validates_config(self, engine, admin):
        block = engine.blocks.create_block(admin, "content", {"html": "<p>v1</p>"})

        with pytest.raises(ValidationError):
            engine.blocks.update_block(admin, block.id, config={"bogus": True})

        stored = engine.state_manager.get_block(block.id)
        assert stored.version == 1
        assert stored.config == {"html": "<p>v1</p>"}

    def test_update_missing_block(self, engine, admin):
        with pytest.raises(NotFoundError):
            engine.blocks.update_block(admin, "missing", name="x")

    def test_fork_and_duplicate(self, engine, admin):
        block = engine.blocks.create_block(admin, "quiz", QUIZ_CONFIG, name="Warm-up")
        engine.blocks.update_block(admin, block.id, name="Warm-up")

        fork = engine.blocks.fork_block(admin, block.id)
        duplicate = engine.blocks.duplicate_block(admin, block.id)

        assert fork.name == "Warm-up (Copy)"
        assert duplicate.name == "Warm-up"
        for clone in (fork, duplicate):
            assert clone.id != block.id
            assert clone.version == 1
            assert clone.parent_id == block.id

    @pytest.mark.parametrize("copy_method", ["fork_block", "duplicate_block"])
    def test_copy_config_is_independent(self, engine, admin, copy_method):
        block = engine.blocks.create_block(admin, "quiz", copy.deepcopy(QUIZ_CONFIG), name="Warm-up")
        clone = getattr(engine.blocks, copy_method)(admin, block.id)

        stored_clone = engine.state_manager.get_block(clone.id)
        stored_clone.config["questions"][0]["options"].append("5")
        stored_clone.config["questions"].append({"text": "3 + 3?", "options": ["6"], "correct_answer": "6"})

        source = engine.state_manager.get_block(block.id)
        assert source.config == QUIZ_CONFIG

        source.config["questions"][0]["text"] = "1 + 1?"
        stored_clone = engine.state_manager.get_block(clone.id)
        assert stored_clone.config["questions"][0]["text"] == "2 + 2?"
        assert stored_clone.config["questions"][0]["options"] == ["3", "4", "5"]
        assert len(stored_clone.config["questions"]) == 2

    def test_updating_fork_leaves_source_untouched(self, engine, admin):
        block = engine.blocks.create_block(admin, "quiz", copy.deepcopy(QUIZ_CONFIG))
        fork = engine.blocks.fork_block(admin, block.id)

        engine.blocks.update_block(admin, fork.id, config={"label": "Renamed", "questions": []})

        assert engine.state_manager.get_block(block.id).config == QUIZ_CONFIG
        assert engine.state_manager.get_block(block.id).version == 1

    def test_fork_unnamed_block_uses_type(self, engine, admin):
        block = engine.blocks.create_block(admin, "signature", {})
        assert engine.blocks.fork_block(admin, block.id).name == "signature (Copy)"


class TestTemplateBlockCopies:
    """Stages built from a template own independent block copies."""

    def test_copies_are_isolated(self, engine, admin, recruitment_program):
        source = engine.blocks.create_block(admin, "quiz", QUIZ_CONFIG, name="Screening")
        template = engine.programs.create_template(admin, "Screening", block_ids=[source.id])

        stage = engine.programs.add_stage_to_program(admin, recruitment_program.id, template_id=template.id)

        assert len(stage.block_ids) == 1
        copy_id = stage.block_ids[0]
        assert copy_id != source.id
        copy = engine.state_manager.get_block(copy_id)
        assert copy.parent_id == source.id
        assert copy.version == 1

        copy.config["questions"][0]["text"] = "3 + 3?"
        assert engine.state_manager.get_block(source.id).config["questions"][0]["text"] == "2 + 2?"

        engine.blocks.update_block(admin, source.id, config={**QUIZ_CONFIG, "label": "Changed"})
        assert engine.state_manager.get_block(copy_id).config["label"] == "Warm-up"

    def test_two_stages_from_one_template(self, engine, admin, recruitment_program):
        source = engine.blocks.create_block(admin, "content", {"html": "<p>Hi</p>"})
        template = engine.programs.create_template(admin, "Intro", block_ids=[source.id])

        first = engine.programs.add_stage_to_program(admin, recruitment_program.id, template_id=template.id)
        second = engine.programs.add_stage_to_program(admin, recruitment_program.id, template_id=template.id)

        assert first.block_ids != second.block_ids


class TestStageBlockPresentation:
    """Test cases for BlockService.get_stage_blocks."""

    @pytest.fixture
    def stage(self, engine, admin, recruitment_program):
        intro = engine.blocks.create_block(admin, "content", {"html": "<p>Welcome</p>"}, name="Intro")
        rubric = engine.blocks.create_block(admin, "review_rubric", RUBRIC_CONFIG, name="Rubric")
        gate = engine.blocks.create_block(admin, "access_gate", GATE_CONFIG, name="Gate")
        staff = engine.blocks.create_block(
            admin, "content", {"html": "<p>Staff notes</p>"}, name="Staff",
            role_access=[{"role_slug": "guest", "can_view": False}],
        )
        locked = engine.blocks.create_block(
            admin, "checklist", {"items": [{"id": "id", "text": "Bring ID"}]}, name="Checklist",
            role_access=[{"role_slug": "guest", "can_view": True, "can_edit": False}],
        )
        return engine.programs.add_stage_to_program(
            admin, recruitment_program.id, name="Assessment",
            block_ids=[intro.id, rubric.id, gate.id, staff.id, locked.id],
        )

    def _by_name(self, views):
        return {v.name: v for v in views}

    def test_anonymous_viewer_sees_nothing(self, engine, stage):
        assert engine.blocks.get_stage_blocks(stage.id, None) == []

    def test_guest_view_is_masked(self, engine, applicant, stage):
        views = self._by_name(engine.blocks.get_stage_blocks(stage.id, applicant))

        assert list(views) == ["Intro", "Rubric", "Gate", "Checklist"]
        assert views["Rubric"].config == {"_internal": True}
        assert views["Gate"].config == {"message": "Enter the code from your invite"}
        assert views["Checklist"].read_only is True
        assert views["Intro"].read_only is False

    def test_manager_sees_internal_config_but_not_passcode(self, engine, manager, stage):
        views = self._by_name(engine.blocks.get_stage_blocks(stage.id, manager))

        assert views["Rubric"].config == RUBRIC_CONFIG
        assert "passcode" not in views["Gate"].config
        assert "Staff" in views

    def test_admin_sees_everything(self, engine, admin, stage):
        views = self._by_name(engine.blocks.get_stage_blocks(stage.id, admin))

        assert len(views) == 5
        assert views["Gate"].config["passcode"] == "open-sesame"
        assert views["Checklist"].read_only is False

    def test_masking_does_not_touch_stored_config(self, engine, applicant, stage):
        engine.blocks.get_stage_blocks(stage.id, applicant)

        gate = engine.state_manager.get_block(stage.block_ids[2])
        assert gate.config["passcode"] == "open-sesame"

    def test_unknown_stage(self, engine, applicant):
        assert engine.blocks.get_stage_blocks("missing", applicant) == []


class TestAccessGate:
    """Test cases for passcode validation."""

    @pytest.fixture
    def gate(self, engine, admin):
        return engine.blocks.create_block(admin, "access_gate", GATE_CONFIG)

    def test_correct_passcode(self, engine, applicant, gate):
        result = engine.blocks.validate_passcode(applicant, gate.id, "open-sesame")
        assert result.success is True
        assert result.error is None

    def test_wrong_passcode_is_audited(self, engine, applicant, gate):
        result = engine.blocks.validate_passcode(applicant, gate.id, "guess")

        assert result.success is False
        record = engine.audit_logger.get_events(action="access_gate.failed_attempt")[0]
        assert record.entity_id == gate.id
        assert record.user_id == applicant.id

    def test_missing_block(self, engine, applicant):
        result = engine.blocks.validate_passcode(applicant, "missing", "x")
        assert result.success is False
        assert result.error == "Block not found"

    def test_gate_without_passcode(self, engine, admin, applicant):
        open_gate = engine.blocks.create_block(admin, "access_gate", {"message": "Come in"})
        assert engine.blocks.validate_passcode(applicant, open_gate.id, "").success is True

    def test_anonymous_rejected(self, engine, gate):
        with pytest.raises(UnauthorizedError):
            engine.blocks.validate_passcode(None, gate.id, "open-sesame")

    def test_attempts_are_rate_limited_per_block(self, engine, admin, applicant, gate):
        for _ in range(5):
            assert engine.blocks.validate_passcode(applicant, gate.id, "guess").success is False

        with pytest.raises(RateLimitedError):
            engine.blocks.validate_passcode(applicant, gate.id, "open-sesame")

        other_gate = engine.blocks.create_block(admin, "access_gate", GATE_CONFIG)
        assert engine.blocks.validate_passcode(applicant, other_gate.id, "open-sesame").success is True

    def test_successful_attempts_do_not_count(self, engine, applicant, gate):
        for _ in range(6):
            assert engine.blocks.validate_passcode(applicant, gate.id, "open-sesame").success is True
