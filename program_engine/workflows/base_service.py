"""
Base Service Class for the Program Engine.

Provides the shared plumbing every service needs: the document store,
capability checks, audit logging and the automation outbox.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..engine.access import AccessController
from ..engine.state_manager import StateManager
from ..exceptions import NotFoundError, UnauthorizedError
from ..models import Program, Stage, UserRecord

if TYPE_CHECKING:
    from .outbox import AutomationOutbox

logger = logging.getLogger(__name__)


class BaseService:
    """
    Common base for program, process and block services.

    Services are stateless apart from their collaborators; every
    state change goes through ``state_manager.transaction()``.
    """

    def __init__(
        self,
        state_manager: StateManager,
        access: AccessController,
        audit_logger: AuditLogger,
        outbox: Optional["AutomationOutbox"] = None,
    ):
        self.state_manager = state_manager
        self.access = access
        self.audit_logger = audit_logger
        self.outbox = outbox

        logger.debug(f"Initialized {self.__class__.__name__}")

    def _require_user(self, actor: Optional[UserRecord]) -> UserRecord:
        if actor is None:
            raise UnauthorizedError()
        return actor

    def _get_program(self, program_id: str) -> Program:
        program = self.state_manager.get_program(program_id)
        if not program:
            raise NotFoundError(f"Program {program_id} not found")
        return program

    def _get_stage(self, stage_id: str) -> Stage:
        stage = self.state_manager.get_stage(stage_id)
        if not stage or stage.is_deleted:
            raise NotFoundError(f"Stage {stage_id} not found")
        return stage

    def _pipeline(self, program: Program) -> List[Stage]:
        """Ordered, non-deleted stages of a program."""
        stages = []
        for stage_id in program.stage_ids:
            stage = self.state_manager.get_stage(stage_id)
            if stage and not stage.is_deleted:
                stages.append(stage)
        return stages

    def _log_audit_event(
        self,
        actor: Optional[UserRecord],
        action: str,
        entity_type: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Record an audit event.

        Args:
            actor: User performing the action
            action: Dotted action name
            entity_type: Kind of entity affected
            entity_id: ID of the entity affected
            before: State before the change
            after: State after the change
            metadata: Extra context

        Returns:
            Audit record ID, or None if the write failed
        """
        changes = None
        if before is not None or after is not None:
            changes = {"before": before, "after": after}
        return self.audit_logger.record(
            user_id=actor.id if actor else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
            metadata=metadata,
        )

    def _enqueue_automation(
        self,
        trigger: str,
        program_id: str,
        user_id: str,
        process_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ):
        """Hand a trigger to the outbox. Must be called after the transaction commits."""
        if self.outbox is None:
            return
        self.outbox.enqueue(trigger, program_id, user_id, process_id=process_id, data=data)
