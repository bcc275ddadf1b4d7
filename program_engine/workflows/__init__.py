"""
Workflows Package for the Program Engine.

This package provides the program definition service, the process state
machine, and the automation evaluator with its outbox.
"""

from .automations import AutomationEvaluator, check_conditions
from .base_service import BaseService
from .helpers import (
    calculate_next_stage,
    generate_slug,
    infer_decision,
    is_valid_email,
    is_valid_slug,
    resolve_value,
    resolve_values,
    validate_program_fields,
    validate_stage_submission,
)
from .outbox import AutomationJob, AutomationOutbox
from .processes import ProcessService
from .programs import ProgramService

__all__ = [
    "AutomationEvaluator",
    "AutomationJob",
    "AutomationOutbox",
    "BaseService",
    "ProcessService",
    "ProgramService",
    "calculate_next_stage",
    "check_conditions",
    "generate_slug",
    "infer_decision",
    "is_valid_email",
    "is_valid_slug",
    "resolve_value",
    "resolve_values",
    "validate_program_fields",
    "validate_stage_submission",
]
