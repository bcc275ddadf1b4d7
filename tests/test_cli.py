"""
Tests for the progctl command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from program_engine.cli.progctl import OPERATOR_ID, ProgramController, cli


@pytest.mark.integration
class TestProgctl:
    """Each invocation builds a fresh controller over the same state file."""

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "progctl.json"
        path.write_text(json.dumps({
            "state_file": str(tmp_path / "state.json"),
            "audit_dir": str(tmp_path / "audit"),
            "notifier": "mock",
        }))
        return path

    @pytest.fixture
    def run(self, config_file):
        runner = CliRunner()

        def invoke(*args):
            result = runner.invoke(cli, ["--config", str(config_file), *args], obj={})
            assert result.exit_code == 0, result.output
            return result

        return invoke

    def _controller(self, config_file):
        return ProgramController(str(config_file))

    def test_operator_is_admin(self, config_file):
        controller = self._controller(config_file)

        assert controller.operator.id == OPERATOR_ID
        assert controller.engine.access.is_admin(controller.operator)
        assert self._controller(config_file).operator.id == OPERATOR_ID

    def test_program_lifecycle(self, run, config_file, tmp_path):
        result = run("create-program", "Fall Recruitment", "fall-recruitment",
                     "--type", "recruitment_cycle", "--start-date", "2026-09-01")
        assert "Created program fall-recruitment" in result.output

        program = self._controller(config_file).engine.state_manager.find_program_by_slug("fall-recruitment")

        stage_config = tmp_path / "stage.json"
        stage_config.write_text(json.dumps({"form_config": [{"id": "full_name", "required": True}]}))
        run("add-stage", program.id, "--name", "Application", "--config-file", str(stage_config))
        run("add-stage", program.id, "--name", "Welcome", "--type", "completed")
        run("activate-program", program.id)

        listing = run("list-programs")
        assert "Programs (1)" in listing.output

        engine = self._controller(config_file).engine
        stored = engine.programs.get_program(program.id)
        assert stored.is_active
        assert len(stored.stage_ids) == 2

    def test_duplicate_slug_reports_error(self, run):
        run("create-program", "Intake", "intake", "--start-date", "2026-01-01")

        result = run("create-program", "Intake again", "intake", "--start-date", "2026-01-01")

        assert "Program slug already exists." in result.output

    def test_process_through_cli(self, run, config_file, tmp_path):
        run("create-program", "Pulse", "pulse", "--start-date", "2026-01-01")
        program = self._controller(config_file).engine.state_manager.find_program_by_slug("pulse")
        run("add-stage", program.id, "--name", "Questions")
        run("register-user", "Mia Member", "mia@example.com", "--role", "member")

        run("start-process", program.id, "mia@example.com", "--type", "survey")

        engine = self._controller(config_file).engine
        process = engine.processes.list_processes(engine.state_manager.get_user(OPERATOR_ID))[0]

        answers = tmp_path / "answers.json"
        answers.write_text(json.dumps({"mood": "good"}))
        result = run("submit", process.id, str(answers))

        assert "completed" in result.output
        engine = self._controller(config_file).engine
        assert engine.state_manager.get_process(process.id).status == "completed"

    def test_unknown_user(self, run):
        result = run("start-process", "p1", "nobody@example.com", "--type", "survey")
        assert "not found" in result.output

    def test_stats_and_roles(self, run):
        assert "Programs: 0" in run("stats").output
        assert "Roles" in run("list-roles").output
