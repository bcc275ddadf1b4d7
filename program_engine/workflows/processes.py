"""
Process Service for the Program Engine.

Instantiates a user's run through a program and advances it stage by
stage. Each mutation runs in one store transaction, is audited, and
hands its trigger to the automation outbox once committed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..engine.access import AccessController
from ..engine.rate_limiter import RateLimiter
from ..engine.state_manager import StateManager
from ..exceptions import ForbiddenError, NotFoundError, ValidationError
from ..models import Process, ProcessStatus, StageType, Trigger, UserRecord
from .base_service import BaseService
from .helpers import calculate_next_stage, infer_decision, stage_matches, validate_stage_submission
from .outbox import AutomationOutbox

logger = logging.getLogger(__name__)


class ProcessService(BaseService):
    """The process state machine."""

    def __init__(
        self,
        state_manager: StateManager,
        access: AccessController,
        audit_logger: AuditLogger,
        rate_limiter: RateLimiter,
        outbox: Optional[AutomationOutbox] = None,
    ):
        super().__init__(state_manager, access, audit_logger, outbox)
        self.rate_limiter = rate_limiter

    def _get_process(self, process_id: str) -> Process:
        process = self.state_manager.get_process(process_id)
        if not process or process.is_deleted:
            raise NotFoundError(f"Process {process_id} not found")
        return process

    def _require_owner_or_admin(self, actor: UserRecord, process: Process):
        if process.user_id != actor.id and not self.access.is_admin(actor):
            raise ForbiddenError("Only the process owner or an administrator may do this")

    def create_process(
        self,
        actor: UserRecord,
        program_id: str,
        process_type: str,
        target_user_id: Optional[str] = None,
    ) -> Process:
        """
        Start a process for a user in a program.

        Args:
            actor: User starting the process
            program_id: Program to run through
            process_type: Process type; must be allowed for the actor's role
            target_user_id: Start on behalf of another user
                            (requires processes.manage_others)

        Returns:
            The new Process positioned on the program's first stage

        Raises:
            ForbiddenError: If the role may not start this process
            RateLimitedError: If the actor exhausted process.create
            NotFoundError: If the program or target user does not exist
            ValidationError: If the program has no stages
            ConflictError: If the user already has a process in the program
        """
        actor = self._require_user(actor)
        role = self.access.require(actor, "processes.create")
        if not role.can_start(process_type):
            raise ForbiddenError(f"Role '{role.slug}' is not allowed to start {process_type} processes")

        user_id = target_user_id or actor.id
        if user_id != actor.id:
            self.access.require(actor, "processes.manage_others")
            if not self.state_manager.get_user(user_id):
                raise NotFoundError(f"User {user_id} not found")

        program = self._get_program(program_id)
        if program.allow_start_by and role.slug not in program.allow_start_by and not role.is_admin:
            raise ForbiddenError(f"Role '{role.slug}' may not start processes in {program.slug}")

        self.rate_limiter.require(actor.id, "process.create")

        with self.state_manager.transaction():
            pipeline = self._pipeline(program)
            if not pipeline:
                raise ValidationError("Invalid program configuration: No stages defined")

            process = Process(
                user_id=user_id,
                program_id=program.id,
                type=process_type,
                current_stage_id=pipeline[0].id,
                stage_flow_snapshot=[stage.id for stage in pipeline],
            )
            self.state_manager.insert_process(process)

        self._log_audit_event(actor, "process.create", "processes", process.id,
                              after={"status": process.status, "current_stage_id": process.current_stage_id},
                              metadata={"program_id": program.id, "type": process_type})
        self._enqueue_automation(Trigger.PROCESS_CREATED.value, program.id, user_id,
                                 process_id=process.id, data={"type": process_type})
        logger.info(f"Created {process_type} process {process.id} for user {user_id}")
        return process

    def submit_stage(
        self, actor: UserRecord, process_id: str, stage_id: str, data: Dict[str, Any]
    ) -> Process:
        """
        Submit data for the process's current stage and advance it.

        Validation failures raise without touching the process. On success
        the data is merged under ``stage_id``, the pointer moves to the
        next stage, and the process completes when it enters a completed
        stage, or when it is still in progress and has no successor.

        Args:
            actor: Process owner or administrator
            process_id: Process to advance
            stage_id: Current stage, by id or original id
            data: Submitted field values

        Returns:
            The updated Process

        Raises:
            NotFoundError: If the process does not exist or is deleted
            ForbiddenError: If the actor neither owns the process nor is admin
            ValidationError: For a stage mismatch or invalid data
        """
        actor = self._require_user(actor)

        with self.state_manager.transaction():
            process = self._get_process(process_id)
            self._require_owner_or_admin(actor, process)

            program = self._get_program(process.program_id)
            pipeline = self._pipeline(program)

            current = next((s for s in pipeline if stage_matches(s, process.current_stage_id)), None)
            if current is None:
                raise ValidationError(
                    "Invalid stage configuration",
                    [f"Current stage {process.current_stage_id} is not part of the program"],
                )
            if not stage_matches(current, stage_id):
                raise ValidationError(
                    "Invalid stage configuration",
                    [f"Stage mismatch: process is at {current.id}, got {stage_id}"],
                )

            errors = validate_stage_submission(data, current)
            if errors:
                raise ValidationError(f"Validation failed: {'; '.join(errors)}", errors)

            previous_stage_id = process.current_stage_id
            previous_status = process.status

            process.data = {**process.data, stage_id: dict(data)}

            next_stage_id = None
            if current.type != StageType.COMPLETED.value:
                next_stage_id = calculate_next_stage(
                    current.id, pipeline, data, snapshot=process.stage_flow_snapshot
                )

            if next_stage_id:
                process.current_stage_id = next_stage_id

            landed = self.state_manager.get_stage(process.current_stage_id)
            at_end = next_stage_id is None or (
                landed is not None and landed.type == StageType.COMPLETED.value
            )
            # Resubmitting a terminal stage keeps any status set through update_status.
            entered_end = process.current_stage_id != previous_stage_id
            finished = at_end and (entered_end or previous_status == ProcessStatus.IN_PROGRESS.value)
            if finished:
                process.status = ProcessStatus.COMPLETED.value

            process.updated_at = datetime.now(timezone.utc)
            final_data = dict(process.data)

        moved = process.current_stage_id != previous_stage_id
        self._log_audit_event(
            actor,
            "process.advance" if moved else "process.update",
            "processes",
            process.id,
            before={"current_stage_id": previous_stage_id},
            after={"current_stage_id": process.current_stage_id},
            metadata={"stage_name": current.name, "submitted_stage_id": stage_id},
        )

        self._enqueue_automation(
            Trigger.STAGE_SUBMISSION.value,
            program.id,
            process.user_id,
            process_id=process.id,
            data={
                "stageId": stage_id,
                "stageName": current.name,
                "submission": dict(data),
                "decision": infer_decision(data, current),
            },
        )
        if finished and previous_status != ProcessStatus.COMPLETED.value:
            self._enqueue_automation(Trigger.PROCESS_COMPLETED.value, program.id, process.user_id,
                                     process_id=process.id, data={"finalData": final_data})
            logger.info(f"Process {process.id} completed")

        return process

    def update_status(self, actor: UserRecord, process_id: str, status: str) -> Process:
        """
        Set a process status directly.

        Raises:
            ForbiddenError: Without the processes.update_status capability
            NotFoundError: If the process does not exist
        """
        self.access.require(actor, "processes.update_status")
        if not status:
            raise ValidationError("Status is required")

        with self.state_manager.transaction():
            process = self._get_process(process_id)
            previous_status = process.status
            process.status = status
            process.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "process.status_change", "processes", process.id,
                              before={"status": previous_status}, after={"status": status})
        self._enqueue_automation(Trigger.STATUS_CHANGE.value, process.program_id, process.user_id,
                                 process_id=process.id,
                                 data={"status": status, "prevStatus": previous_status})
        return process

    def accept_offer(self, actor: UserRecord, process_id: str) -> Process:
        """
        Accept an offer on the actor's own process.

        Raises:
            ForbiddenError: If the actor does not own the process
            ValidationError: Unless the process status is "accepted"
        """
        actor = self._require_user(actor)

        with self.state_manager.transaction():
            process = self._get_process(process_id)
            if process.user_id != actor.id:
                raise ForbiddenError("Only the applicant can accept an offer")
            if process.status != ProcessStatus.ACCEPTED.value:
                raise ValidationError("No offer to accept: process has not been accepted")
            process.status = ProcessStatus.OFFER_ACCEPTED.value
            process.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "offer.accept", "processes", process.id,
                              before={"status": ProcessStatus.ACCEPTED.value},
                              after={"status": process.status})
        self._enqueue_automation(Trigger.OFFER_ACCEPTED.value, process.program_id, process.user_id,
                                 process_id=process.id, data={"status": process.status})
        return process

    def get_process(self, actor: UserRecord, process_id: str) -> Process:
        actor = self._require_user(actor)
        process = self._get_process(process_id)
        if process.user_id != actor.id and not self.access.has(actor, "processes.view_all"):
            raise ForbiddenError("Not allowed to view this process")
        return process

    def get_my_processes(self, actor: UserRecord) -> List[Process]:
        actor = self._require_user(actor)
        processes = self.state_manager.query(
            "processes", lambda p: p.user_id == actor.id and not p.is_deleted
        )
        return sorted(processes, key=lambda p: p.created_at)

    def list_processes(
        self,
        actor: UserRecord,
        process_type: Optional[str] = None,
        program_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Process]:
        """List every active process, filtered; requires processes.view_all."""
        self.access.require(actor, "processes.view_all")

        def matches(process: Process) -> bool:
            if process.is_deleted:
                return False
            if process_type and process.type != process_type:
                return False
            if program_id and process.program_id != program_id:
                return False
            return not status or process.status == status

        return sorted(self.state_manager.query("processes", matches), key=lambda p: p.created_at)

    def soft_delete_process(self, actor: UserRecord, process_id: str) -> Process:
        """
        Mark a process deleted. Processes are never removed from the store.

        A deleted process frees the user to start a new one in the program.
        """
        actor = self._require_user(actor)

        with self.state_manager.transaction():
            process = self._get_process(process_id)
            self._require_owner_or_admin(actor, process)
            process.is_deleted = True
            process.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "process.delete", "processes", process.id,
                              metadata={"program_id": process.program_id})
        return process
