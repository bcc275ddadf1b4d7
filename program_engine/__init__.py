"""
Program Engine

Workflow engine for HR programs: multi-stage program definitions,
per-user processes that advance through them, and declarative
automations that react to each transition.
"""

__version__ = "1.0.0"
__author__ = "Program Engine Team"
__email__ = "team@example.com"

from .engine.role_store import RoleStore
from .engine.state_manager import StateManager
from .runtime import ProgramEngine
from .workflows.processes import ProcessService
from .workflows.programs import ProgramService

__all__ = [
    "ProgramEngine",
    "ProcessService",
    "ProgramService",
    "RoleStore",
    "StateManager",
]
