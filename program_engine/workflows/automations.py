"""
Automation Evaluator for the Program Engine.

Matches program- and stage-level automation rules against a trigger and
its context data, then executes the rule's actions in order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..engine.state_manager import StateManager
from ..exceptions import ConflictError
from ..models import Automation, AutomationAction, Process, Program, UserRecord
from ..notifications import BaseNotifier
from .helpers import resolve_value, resolve_values

logger = logging.getLogger(__name__)

PREREQUISITES_KEY = "check_prerequisites"
PROFILE_ROOT_KEYS = ("join_date", "exit_date", "privacy_level")


def check_conditions(conditions: Optional[Dict[str, Any]], data: Optional[Dict[str, Any]]) -> bool:
    """
    Flat equality match of rule conditions against context data.

    Args:
        conditions: Expected key/value pairs; None or empty always matches
        data: Context data of the trigger

    Returns:
        True if every key is present in data with an equal value
    """
    if not conditions:
        return True
    if data is None:
        return False

    for key, expected in conditions.items():
        if key == PREREQUISITES_KEY:
            continue
        if key not in data or data[key] != expected:
            return False
    return True


class AutomationEvaluator:
    """
    Runs automation rules for a trigger.

    Actions mutate user records or the triggering process through the
    state manager, or dispatch notifications through the notifier.
    Unknown action types are logged and skipped.
    """

    def __init__(
        self,
        state_manager: StateManager,
        notifier: BaseNotifier,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.state_manager = state_manager
        self.notifier = notifier
        self.audit_logger = audit_logger

        self.action_handlers = {
            "send_email": self._send_email,
            "update_role": self._update_role,
            "update_status": self._update_status,
            "manage_user_profile": self._manage_user_profile,
            "update_process_status": self._update_process_status,
            "trigger_process": self._trigger_process,
        }

    def evaluate(
        self,
        trigger: str,
        program_id: Optional[str],
        user_id: str,
        process_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """
        Evaluate every automation matching the trigger.

        Args:
            trigger: Trigger name, e.g. "stage_submission"
            program_id: Program whose rules apply
            user_id: User the actions act on
            process_id: Process that fired the trigger
            data: Context data; ``stageId`` selects stage-scoped rules

        Returns:
            Types of the actions that were executed, in order
        """
        program = self.state_manager.get_program(program_id) if program_id else None
        if not program:
            logger.debug(f"No program {program_id} for trigger {trigger}, skipping automations")
            return []

        executed = []
        for automation in self._candidates(program, data):
            if automation.trigger != trigger:
                continue
            if not check_conditions(automation.conditions, data):
                continue

            prerequisites = (automation.conditions or {}).get(PREREQUISITES_KEY)
            if prerequisites and not self.verify_prerequisites(user_id, prerequisites):
                logger.debug(f"Prerequisites not met for user {user_id} on {trigger}")
                continue

            for action in automation.actions:
                try:
                    if self._execute_action(action, user_id, process_id, data or {}):
                        executed.append(action.type)
                except Exception as e:
                    logger.error(f"Automation action {action.type} failed for user {user_id} on {trigger}: {e}")

        if executed:
            logger.info(f"Trigger {trigger} on program {program.slug} executed {len(executed)} actions")
        return executed

    def _candidates(self, program: Program, data: Optional[Dict[str, Any]]) -> List[Automation]:
        candidates = list(program.automations)
        stage_id = (data or {}).get("stageId")
        if stage_id:
            for sid in program.stage_ids:
                stage = self.state_manager.get_stage(sid)
                if stage and not stage.is_deleted and stage_id in (stage.id, stage.original_stage_id):
                    candidates.extend(stage.automations)
                    break
        return candidates

    def verify_prerequisites(self, user_id: str, condition: Dict[str, Any]) -> bool:
        """
        Check that the user has a process in another program.

        Args:
            user_id: User to check
            condition: {"programSlug": ..., "status": optional required status}

        Returns:
            True if a matching process exists
        """
        slug = condition.get("programSlug") or condition.get("program_slug") or ""
        program = self.state_manager.find_program_by_slug(slug)
        if not program:
            return False

        process = self.state_manager.find_active_process(user_id, program.id)
        if not process:
            return False

        required_status = condition.get("status")
        return not required_status or process.status == required_status

    def _execute_action(
        self, action: AutomationAction, user_id: str, process_id: Optional[str], data: Dict[str, Any]
    ) -> bool:
        handler = self.action_handlers.get(action.type)
        if handler is None:
            logger.warning(f"Unknown automation action type: {action.type}")
            return False

        user = self.state_manager.get_user(user_id)
        if not user:
            logger.warning(f"Automation target user {user_id} not found, skipping {action.type}")
            return False

        handler(user, action.payload, process_id, data)

        if self.audit_logger:
            self.audit_logger.record(
                user_id=None,
                action=f"automation.{action.type}",
                entity_type="users",
                entity_id=user_id,
                metadata={"process_id": process_id},
            )
        return True

    def _send_email(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        result = self.notifier.send(
            user.email,
            payload.get("subject") or "Notification",
            payload.get("template") or "default",
            {"name": user.name, **data, **(payload.get("variables") or {})},
        )
        if not result:
            logger.warning(f"Notification to {user.email} failed: {result.error}")

    def _update_role(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        with self.state_manager.transaction():
            user = self.state_manager.get_user(user.id)
            system_role = payload.get("system_role") or payload.get("systemRole")
            clearance_level = payload.get("clearance_level", payload.get("clearanceLevel"))
            if system_role:
                user.system_role = system_role
            if clearance_level is not None:
                user.clearance_level = int(clearance_level)
        logger.info(f"Updated role of user {user.id} to {user.system_role}")

    def _update_status(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        with self.state_manager.transaction():
            user = self.state_manager.get_user(user.id)
            user.profile.status = payload.get("status") or user.profile.status or "candidate"
        logger.info(f"Updated profile status of user {user.id} to {user.profile.status}")

    def _manage_user_profile(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        updates = resolve_values(payload.get("fields") or {}, data)
        with self.state_manager.transaction():
            user = self.state_manager.get_user(user.id)
            for key, value in updates.items():
                if key in PROFILE_ROOT_KEYS:
                    setattr(user.profile, key, value)
                else:
                    user.profile.custom_fields[key] = value
        logger.info(f"Updated {len(updates)} profile fields of user {user.id}")

    def _update_process_status(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        status = resolve_value(payload.get("status"), data)
        if not status or not process_id:
            return
        with self.state_manager.transaction():
            process = self.state_manager.get_process(process_id)
            if not process or process.is_deleted:
                logger.warning(f"Process {process_id} not found for status update")
                return
            process.status = status
            process.updated_at = datetime.now(timezone.utc)
        logger.info(f"Automation set process {process_id} status to {status}")

    def _trigger_process(self, user: UserRecord, payload: Dict[str, Any], process_id, data):
        program = None
        program_id = payload.get("program_id") or payload.get("programId")
        program_slug = payload.get("program_slug") or payload.get("programSlug")
        if program_id:
            program = self.state_manager.get_program(program_id)
        elif program_slug:
            program = self.state_manager.find_program_by_slug(program_slug)

        if not program or not program.stage_ids:
            logger.warning(f"trigger_process target not found or has no stages: {payload}")
            return

        process = Process(
            user_id=user.id,
            program_id=program.id,
            type=payload.get("type") or program.type,
            current_stage_id=program.stage_ids[0],
            stage_flow_snapshot=list(program.stage_ids),
        )
        try:
            self.state_manager.insert_process(process)
        except ConflictError:
            logger.debug(f"User {user.id} already has a process in {program.slug}")
            return
        logger.info(f"Started process {process.id} in {program.slug} for user {user.id}")
