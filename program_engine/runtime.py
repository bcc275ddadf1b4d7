"""
Program Engine runtime.

Builds every component from a configuration dictionary and exposes the
services as one object, used by the API server, the CLI and tests.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .audit.audit_logger import AuditLogger
from .blocks.block_service import BlockService
from .engine.access import AccessController, IdentityResolver
from .engine.rate_limiter import RateLimiter
from .engine.role_store import RoleStore
from .engine.state_manager import StateManager
from .models import UserRecord
from .notifications import get_notifier
from .workflows.automations import AutomationEvaluator
from .workflows.outbox import AutomationOutbox, run_immediately
from .workflows.processes import ProcessService
from .workflows.programs import ProgramService

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "state_file": None,
    "audit_dir": None,
    "roles_dir": None,
    "rate_limits": {},
    "notifier": "mock",
    "webhook_url": None,
    "automation_max_attempts": 1,
    "automation_mode": "inline",
}


class ProgramEngine:
    """
    Wires the store, role lookup, services and automation pipeline.

    Configuration keys:
        state_file: JSON file for persistent state (in-memory if unset)
        audit_dir: Directory for daily JSONL audit logs (in-memory if unset)
        roles_dir: Directory containing roles.yaml (package default if unset)
        rate_limits: Overrides for RATE_LIMITS entries
        notifier: "mock", "log" or "webhook"
        webhook_url: Endpoint for the webhook notifier
        automation_max_attempts: Attempts per automation job before dead-lettering
        automation_mode: "inline" to run automations right after each
                         mutation, "deferred" to leave them for ``outbox.drain()``
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, scheduler: Optional[Callable] = None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}

        self.state_manager = StateManager(self.config.get("state_file"))
        self.audit_logger = AuditLogger(self.config.get("audit_dir"))
        self.role_store = RoleStore(self.config.get("roles_dir"))
        self.rate_limiter = RateLimiter(self.config.get("rate_limits"))
        self.access = AccessController(self.role_store)
        self.identity = IdentityResolver(self.state_manager)

        self.notifier = get_notifier(
            self.config.get("notifier", "mock"),
            {"webhook_url": self.config.get("webhook_url"), **self.config.get("notifier_options", {})},
        )

        if scheduler is None and self.config.get("automation_mode") == "inline":
            scheduler = run_immediately
        self.evaluator = AutomationEvaluator(self.state_manager, self.notifier, self.audit_logger)
        self.outbox = AutomationOutbox(
            self.evaluator,
            scheduler=scheduler,
            max_attempts=int(self.config.get("automation_max_attempts", 1)),
        )

        self.programs = ProgramService(self.state_manager, self.access, self.audit_logger, self.outbox)
        self.processes = ProcessService(
            self.state_manager, self.access, self.audit_logger, self.rate_limiter, self.outbox
        )
        self.blocks = BlockService(self.state_manager, self.access, self.audit_logger, self.rate_limiter)

        logger.info(
            f"Initialized ProgramEngine (notifier={self.config.get('notifier')}, "
            f"automation_mode={self.config.get('automation_mode')})"
        )

    def register_user(
        self,
        name: str,
        email: str,
        system_role: str = "guest",
        clearance_level: int = 0,
        user_id: Optional[str] = None,
    ) -> UserRecord:
        """
        Add a user record to the store.

        Returns:
            The stored UserRecord
        """
        fields: Dict[str, Any] = {
            "name": name,
            "email": email,
            "system_role": system_role,
            "clearance_level": clearance_level,
        }
        if user_id:
            fields["id"] = user_id
        user = UserRecord(**fields)
        self.state_manager.put("users", user)
        logger.info(f"Registered user {user.id} ({system_role})")
        return user

    def get_stats(self) -> Dict[str, Any]:
        return {
            "documents": self.state_manager.get_summary(),
            "automations": self.outbox.get_stats(),
        }
