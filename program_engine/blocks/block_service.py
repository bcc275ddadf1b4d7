"""
Block Service for the Program Engine.

Creates, versions and copies block instances, and presents a stage's
blocks to a viewer with internal configuration hidden.
"""

import copy
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..engine.access import AccessController
from ..engine.rate_limiter import RateLimiter
from ..engine.state_manager import StateManager
from ..exceptions import NotFoundError, ValidationError
from ..models import BlockInstance, BlockView, PasscodeResult, RoleAccess, UserRecord
from ..workflows.base_service import BaseService
from .validators import ACCESS_GATE_TYPE, INTERNAL_BLOCK_TYPES, validate_block_config

logger = logging.getLogger(__name__)

ACCESS_GATE_ACTION = "access_gate.attempt"


def _passcodes_match(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


class BlockService(BaseService):
    """Block instantiation, versioning and viewer-specific presentation."""

    def __init__(
        self,
        state_manager: StateManager,
        access: AccessController,
        audit_logger: AuditLogger,
        rate_limiter: RateLimiter,
    ):
        super().__init__(state_manager, access, audit_logger)
        self.rate_limiter = rate_limiter

    def _check_config(self, block_type: str, config: Any):
        errors = validate_block_config(block_type, config)
        if errors:
            raise ValidationError(f"Invalid configuration for block type '{block_type}'", errors)

    def _get_block(self, block_id: str) -> BlockInstance:
        block = self.state_manager.get_block(block_id)
        if not block:
            raise NotFoundError(f"Block {block_id} not found")
        return block

    def create_block(
        self,
        actor: UserRecord,
        block_type: str,
        config: Dict[str, Any],
        name: Optional[str] = None,
        role_access: Optional[List[Dict[str, Any]]] = None,
    ) -> BlockInstance:
        """
        Create a block instance.

        Args:
            actor: User creating the block
            block_type: Block type name
            config: Block configuration
            name: Optional display name
            role_access: Optional per-role access entries

        Returns:
            The stored BlockInstance
        """
        self.access.require(actor, "blocks.manage")
        self._check_config(block_type, config)

        block = BlockInstance(
            type=block_type,
            name=name,
            config=copy.deepcopy(config),
            role_access=[RoleAccess(**ra) for ra in role_access or []],
        )
        self.state_manager.put("blocks", block)
        self._log_audit_event(actor, "block.create", "block_instances", block.id,
                              metadata={"type": block_type})
        logger.info(f"Created {block_type} block {block.id}")
        return block

    def create_blocks_batch(self, actor: UserRecord, blocks: List[Dict[str, Any]]) -> List[BlockInstance]:
        """
        Create several blocks at once.

        Every config is validated before anything is stored; one invalid
        block rejects the whole batch.
        """
        self.access.require(actor, "blocks.manage")

        errors = []
        for index, entry in enumerate(blocks):
            if not entry.get("type"):
                errors.append(f"[{index}] Block type is required")
                continue
            for error in validate_block_config(entry.get("type", ""), entry.get("config")):
                errors.append(f"[{index}] {error}")
        if errors:
            raise ValidationError("Invalid block configuration in batch", errors)

        created = []
        with self.state_manager.transaction():
            for entry in blocks:
                block = BlockInstance(
                    type=entry["type"],
                    name=entry.get("name"),
                    config=copy.deepcopy(entry["config"]),
                    role_access=[RoleAccess(**ra) for ra in entry.get("role_access") or []],
                )
                self.state_manager.put("blocks", block)
                created.append(block)

        self._log_audit_event(actor, "block.create_batch", "block_instances",
                              ",".join(b.id for b in created), metadata={"count": len(created)})
        return created

    def update_block(
        self,
        actor: UserRecord,
        block_id: str,
        config: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        role_access: Optional[List[Dict[str, Any]]] = None,
    ) -> BlockInstance:
        """
        Update a block's config, name or role access and bump its version.

        Raises:
            NotFoundError: If the block does not exist
            ValidationError: If the new config fails validation
        """
        self.access.require(actor, "blocks.manage")

        with self.state_manager.transaction():
            block = self._get_block(block_id)
            before = {"version": block.version, "name": block.name}

            if config is not None:
                self._check_config(block.type, config)
                block.config = copy.deepcopy(config)
            if name is not None:
                block.name = name
            if role_access is not None:
                block.role_access = [RoleAccess(**ra) for ra in role_access]

            block.version += 1
            block.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "block.update", "block_instances", block.id,
                              before=before, after={"version": block.version, "name": block.name})
        return block

    def fork_block(self, actor: UserRecord, block_id: str) -> BlockInstance:
        """Copy a block under the name "<name> (Copy)"."""
        self.access.require(actor, "blocks.manage")
        source = self._get_block(block_id)
        fork = source.copy_as(name=f"{source.name or source.type} (Copy)")
        self.state_manager.put("blocks", fork)
        self._log_audit_event(actor, "block.fork", "block_instances", fork.id,
                              metadata={"parent_id": source.id})
        return fork

    def duplicate_block(self, actor: UserRecord, block_id: str) -> BlockInstance:
        """Copy a block keeping its name."""
        self.access.require(actor, "blocks.manage")
        source = self._get_block(block_id)
        duplicate = source.copy_as()
        self.state_manager.put("blocks", duplicate)
        self._log_audit_event(actor, "block.duplicate", "block_instances", duplicate.id,
                              metadata={"parent_id": source.id})
        return duplicate

    def get_stage_blocks(self, stage_id: str, viewer: Optional[UserRecord]) -> List[BlockView]:
        """
        Blocks of a stage as the viewer may see them.

        Anonymous viewers get nothing. Blocks denied to the viewer's role
        are omitted, internal review blocks are masked for viewers without
        ``blocks.view_internal``, access gate passcodes are stripped for
        non-admins, and blocks the role may not edit are marked read-only.
        """
        if viewer is None:
            return []

        stage = self.state_manager.get_stage(stage_id)
        if not stage or stage.is_deleted:
            return []

        role = self.access.role_for(viewer)
        privileged = role.has_capability("blocks.view_internal")

        views = []
        for block_id in stage.block_ids:
            block = self.state_manager.get_block(block_id)
            if not block:
                logger.warning(f"Stage {stage_id} references missing block {block_id}")
                continue

            entry = next((ra for ra in block.role_access if ra.role_slug == role.slug), None)
            if entry and not entry.can_view and not role.is_admin:
                continue

            config = copy.deepcopy(block.config)
            if block.type in INTERNAL_BLOCK_TYPES and not privileged:
                config = {"_internal": True}
            elif block.type == ACCESS_GATE_TYPE and not role.is_admin:
                config.pop("passcode", None)

            views.append(
                BlockView(
                    id=block.id,
                    type=block.type,
                    name=block.name,
                    config=config,
                    version=block.version,
                    parent_id=block.parent_id,
                    read_only=bool(entry and not entry.can_edit and not role.is_admin),
                )
            )
        return views

    def validate_passcode(self, viewer: Optional[UserRecord], block_id: str, passcode: str) -> PasscodeResult:
        """
        Check an access gate passcode.

        Args:
            viewer: Authenticated user
            block_id: Access gate block
            passcode: Passcode entered by the user

        Returns:
            PasscodeResult; failed attempts count against a per-user,
            per-block hourly limit and are audited

        Raises:
            UnauthorizedError: If there is no viewer
            RateLimitedError: If the attempt limit is exhausted
        """
        viewer = self._require_user(viewer)
        action = f"{ACCESS_GATE_ACTION}.{block_id}"
        self.rate_limiter.ensure_available(viewer.id, action)

        block = self.state_manager.get_block(block_id)
        if not block:
            return PasscodeResult(success=False, error="Block not found")

        expected = block.config.get("passcode")
        if not expected:
            return PasscodeResult(success=True)

        if _passcodes_match(passcode or "", str(expected)):
            return PasscodeResult(success=True)

        self.rate_limiter.record(viewer.id, action)
        self._log_audit_event(viewer, "access_gate.failed_attempt", "block_instances", block_id,
                              metadata={"attempted_at": datetime.now(timezone.utc).isoformat()})
        logger.warning(f"Failed access gate attempt by {viewer.id} on block {block_id}")
        return PasscodeResult(success=False)
