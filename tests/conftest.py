"""
Shared fixtures for the Program Engine tests.
"""

from datetime import datetime, timezone

import pytest

from program_engine.runtime import ProgramEngine

APPLICATION_FORM = [
    {"id": "full_name", "label": "Full Name", "type": "text", "required": True},
    {"id": "contact", "label": "Contact Email", "type": "email", "required": True},
    {"id": "years", "label": "Years of Experience", "type": "number"},
]

INTERVIEW_FORM = [
    {"id": "outcome", "label": "Outcome", "type": "decision",
     "options": ["accept", "decline"], "required": True},
    {"id": "notes", "label": "Notes", "type": "text"},
]


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests across components")


@pytest.fixture
def engine():
    """In-memory engine with inline automations and a mock notifier."""
    return ProgramEngine()


@pytest.fixture
def admin(engine):
    return engine.register_user("Ada Admin", "ada@example.com", system_role="admin")


@pytest.fixture
def applicant(engine):
    return engine.register_user("Gus Guest", "gus@example.com", system_role="guest")


@pytest.fixture
def member(engine):
    return engine.register_user("Mia Member", "mia@example.com", system_role="member")


@pytest.fixture
def manager(engine):
    return engine.register_user("Max Manager", "max@example.com", system_role="manager")


@pytest.fixture
def recruitment_program(engine, admin):
    """Recruitment program with Application -> Interview -> Welcome stages."""
    program = engine.programs.create_program(
        admin,
        name="Fall Recruitment",
        slug="fall-recruitment",
        start_date=datetime(2026, 9, 1, tzinfo=timezone.utc),
        program_type="recruitment_cycle",
    )
    engine.programs.add_stage_to_program(
        admin, program.id, name="Application", stage_type="form",
        config={"form_config": APPLICATION_FORM},
    )
    engine.programs.add_stage_to_program(
        admin, program.id, name="Interview", stage_type="interview",
        config={"form_config": INTERVIEW_FORM},
    )
    engine.programs.add_stage_to_program(admin, program.id, name="Welcome", stage_type="completed")
    return engine.programs.get_program(program.id)


@pytest.fixture
def stages(engine, recruitment_program):
    return engine.programs.get_program_stages(recruitment_program.id)


@pytest.fixture
def valid_application():
    return {"full_name": "Gus Guest", "contact": "gus@example.com", "years": "3"}
