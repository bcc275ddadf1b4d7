"""
Program Service for the Program Engine.

Defines programs and their ordered stages, manages stage templates,
enforces the single-active-program rule and filters programs and stages
by the viewer's role.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import (
    Automation,
    Program,
    ProgramType,
    RoleAccess,
    Stage,
    StageTemplate,
    StageView,
    UserRecord,
    ViewConfigEntry,
)
from .base_service import BaseService
from .helpers import validate_form_config, validate_program_fields

logger = logging.getLogger(__name__)

PROGRAM_PATCH_FIELDS = (
    "name", "slug", "type", "start_date", "end_date", "config", "is_active",
    "automations", "view_config", "allow_start_by",
)
STAGE_PATCH_FIELDS = (
    "name", "type", "description", "config", "block_ids", "automations", "original_stage_id",
)


class ProgramService(BaseService):
    """Program, stage and template management."""

    # Programs

    def create_program(
        self,
        actor: UserRecord,
        name: str,
        slug: str,
        start_date: datetime,
        program_type: Optional[str] = None,
        end_date: Optional[datetime] = None,
        config: Optional[Dict[str, Any]] = None,
        automations: Optional[List[Dict[str, Any]]] = None,
        allow_start_by: Optional[List[str]] = None,
    ) -> Program:
        """
        Create an inactive program with no stages.

        Args:
            actor: User creating the program
            name: Display name
            slug: Unique slug
            start_date: Program start
            program_type: One of the recognized program types, default "generic"
            end_date: Optional program end
            config: Free-form program settings
            automations: Program-level automation rules
            allow_start_by: Role slugs allowed to start processes

        Returns:
            The stored Program

        Raises:
            ForbiddenError: Without the programs.manage capability
            ValidationError: For a malformed slug or unknown type
            ConflictError: If the slug is taken
        """
        self.access.require(actor, "programs.manage")

        errors = validate_program_fields(slug=slug, program_type=program_type)
        if errors:
            raise ValidationError(errors[0], errors)

        program = Program(
            name=name,
            slug=slug,
            type=program_type or ProgramType.GENERIC.value,
            start_date=start_date,
            end_date=end_date,
            config=config or {},
            automations=[Automation(**a) for a in automations or []],
            allow_start_by=allow_start_by,
        )
        self.state_manager.insert_program(program)

        self._log_audit_event(actor, "program.create", "programs", program.id,
                              after={"name": name, "slug": slug, "type": program.type})
        logger.info(f"Created program {program.slug} ({program.id})")
        return program

    def update_program(self, actor: UserRecord, program_id: str, patch: Dict[str, Any]) -> Program:
        """
        Patch a program.

        Setting ``is_active`` delegates to activate_program or
        deactivate_program inside the same transaction.

        Raises:
            NotFoundError: If the program does not exist
            ValidationError: For unknown fields, bad slug or bad type
            ConflictError: If a new slug is taken
        """
        self.access.require(actor, "programs.manage")

        unknown = [key for key in patch if key not in PROGRAM_PATCH_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown program fields: {', '.join(unknown)}")

        errors = validate_program_fields(slug=patch.get("slug"), program_type=patch.get("type"))
        if errors:
            raise ValidationError(errors[0], errors)

        with self.state_manager.transaction():
            program = self._get_program(program_id)
            before = program.model_dump(mode="json", include=set(patch))

            for key, value in patch.items():
                if key == "is_active":
                    continue
                if key == "automations":
                    value = [Automation(**a) if isinstance(a, dict) else a for a in value or []]
                elif key == "view_config":
                    value = {role: ViewConfigEntry(**entry) if isinstance(entry, dict) else entry
                             for role, entry in (value or {}).items()}
                setattr(program, key, value)

            if "slug" in patch:
                self.state_manager.insert_program(program)

            if patch.get("is_active") is True:
                self.activate_program(actor, program_id)
            elif patch.get("is_active") is False:
                self.deactivate_program(actor, program_id)

            program.updated_at = datetime.now(timezone.utc)
            after = program.model_dump(mode="json", include=set(patch))

        self._log_audit_event(actor, "program.update", "programs", program.id, before=before, after=after)
        return program

    def activate_program(self, actor: UserRecord, program_id: str) -> Program:
        """Activate a program and deactivate every other active one."""
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            program = self._get_program(program_id)
            deactivated = []
            for other in self.state_manager.get_active_programs():
                if other.id != program.id:
                    other.is_active = False
                    other.updated_at = datetime.now(timezone.utc)
                    deactivated.append(other.id)
            program.is_active = True
            program.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "program.activate", "programs", program.id,
                              metadata={"deactivated": deactivated})
        logger.info(f"Activated program {program.slug}, deactivated {len(deactivated)} others")
        return program

    def deactivate_program(self, actor: UserRecord, program_id: str) -> Program:
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            program = self._get_program(program_id)
            program.is_active = False
            program.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "program.deactivate", "programs", program.id)
        return program

    def get_program(self, program_id: str) -> Program:
        return self._get_program(program_id)

    def get_active_program(self) -> Optional[Program]:
        active = self.state_manager.get_active_programs()
        return active[0] if active else None

    def list_programs(self, program_type: Optional[str] = None) -> List[Program]:
        programs = self.state_manager.query("programs")
        if program_type:
            programs = [p for p in programs if p.type == program_type]
        return sorted(programs, key=lambda p: p.created_at)

    # View configuration

    def update_view_config(
        self, actor: UserRecord, program_id: str, view_config: Dict[str, Dict[str, Any]]
    ) -> Program:
        """Replace a program's per-role view configuration."""
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            program = self._get_program(program_id)
            before = {role: entry.model_dump() for role, entry in program.view_config.items()}
            program.view_config = {role: ViewConfigEntry(**entry) for role, entry in view_config.items()}
            program.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "program.update_view_config", "programs", program.id,
                              before=before, after=view_config)
        return program

    def _is_visible_to(self, program: Program, viewer: UserRecord) -> bool:
        role = self.access.role_for(viewer)
        if role.has_capability("programs.view_all"):
            return True
        entry = program.view_config.get(role.slug)
        return entry is None or entry.visible

    def get_visible_programs(self, viewer: UserRecord, program_type: Optional[str] = None) -> List[Program]:
        """
        Programs the viewer's role may see.

        A role explicitly configured with ``visible=False`` does not see
        the program; unconfigured roles do.
        """
        viewer = self._require_user(viewer)
        return [p for p in self.list_programs(program_type) if self._is_visible_to(p, viewer)]

    def get_program_for_role(self, viewer: UserRecord, program_id: str) -> Optional[Program]:
        """The program if the viewer's role may see it, else None."""
        viewer = self._require_user(viewer)
        program = self.state_manager.get_program(program_id)
        if not program or not self._is_visible_to(program, viewer):
            return None
        return program

    # Templates

    def create_template(
        self,
        actor: UserRecord,
        name: str,
        stage_type: str = "form",
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        block_ids: Optional[List[str]] = None,
        automations: Optional[List[Dict[str, Any]]] = None,
    ) -> StageTemplate:
        """Create a reusable stage template."""
        self.access.require(actor, "programs.manage")

        missing = [bid for bid in block_ids or [] if not self.state_manager.get_block(bid)]
        if missing:
            raise ValidationError(f"Unknown blocks: {', '.join(missing)}")
        self._require_valid_form_config(config)

        template = StageTemplate(
            name=name,
            type=stage_type,
            description=description,
            config=config or {},
            block_ids=list(block_ids or []),
            automations=[Automation(**a) for a in automations or []],
        )
        self.state_manager.put("templates", template)
        self._log_audit_event(actor, "template.create", "stage_templates", template.id,
                              after={"name": name, "type": stage_type})
        return template

    def list_templates(self) -> List[StageTemplate]:
        return sorted(self.state_manager.query("templates"), key=lambda t: t.created_at)

    # Stages

    def add_stage_to_program(
        self,
        actor: UserRecord,
        program_id: str,
        name: Optional[str] = None,
        stage_type: Optional[str] = None,
        template_id: Optional[str] = None,
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        block_ids: Optional[List[str]] = None,
        automations: Optional[List[Dict[str, Any]]] = None,
        original_stage_id: Optional[str] = None,
        role_access: Optional[List[Dict[str, Any]]] = None,
    ) -> Stage:
        """
        Append a stage to a program.

        When ``template_id`` is given, the template supplies defaults for
        name, type, description, config and automations, and every block
        it references is deep-copied so the stage owns independent
        instances.

        Returns:
            The stored Stage

        Raises:
            NotFoundError: If the program or template does not exist
            ValidationError: If no name is available or a block is unknown
        """
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            program = self._get_program(program_id)

            template = None
            if template_id:
                template = self.state_manager.get_template(template_id)
                if not template:
                    raise NotFoundError(f"Template {template_id} not found")

            stage_name = name or (template.name if template else None)
            if not stage_name:
                raise ValidationError("Stage name is required")

            stage_config: Dict[str, Any] = copy.deepcopy(template.config) if template else {}
            stage_config.update(copy.deepcopy(config or {}))
            self._require_valid_form_config(stage_config)

            if template:
                stage_block_ids = self._copy_template_blocks(template)
            else:
                missing = [bid for bid in block_ids or [] if not self.state_manager.get_block(bid)]
                if missing:
                    raise ValidationError(f"Unknown blocks: {', '.join(missing)}")
                stage_block_ids = list(block_ids or [])

            if automations is not None:
                stage_automations = [Automation(**a) for a in automations]
            elif template:
                stage_automations = [a.model_copy(deep=True) for a in template.automations]
            else:
                stage_automations = []

            stage = Stage(
                program_id=program.id,
                name=stage_name,
                type=stage_type or (template.type if template else "form"),
                description=description if description is not None else (template.description if template else None),
                config=stage_config,
                block_ids=stage_block_ids,
                automations=stage_automations,
                role_access=[RoleAccess(**ra) for ra in role_access or []],
                original_stage_id=original_stage_id,
                source_template_id=template.id if template else None,
            )
            self.state_manager.put("stages", stage)
            program.stage_ids.append(stage.id)
            program.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "stage.create", "stages", stage.id,
                              metadata={"program_id": program.id, "template_id": template_id})
        logger.info(f"Added stage '{stage.name}' to program {program.slug}")
        return stage

    def _require_valid_form_config(self, config: Optional[Dict[str, Any]]):
        errors = validate_form_config(config)
        if errors:
            raise ValidationError(f"Invalid form configuration: {'; '.join(errors)}", errors)

    def _copy_template_blocks(self, template: StageTemplate) -> List[str]:
        copies = []
        for block_id in template.block_ids:
            source = self.state_manager.get_block(block_id)
            if not source:
                logger.warning(f"Template {template.id} references missing block {block_id}")
                continue
            clone = source.copy_as()
            self.state_manager.put("blocks", clone)
            copies.append(clone.id)
        return copies

    def reorder_stages(self, actor: UserRecord, program_id: str, stage_ids: List[str]) -> Program:
        """
        Replace a program's stage order.

        ``stage_ids`` must be a permutation of the program's current stages.
        """
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            program = self._get_program(program_id)
            current = set(program.stage_ids)
            if len(stage_ids) != len(set(stage_ids)) or set(stage_ids) != current:
                raise ValidationError(
                    "Stage order must list every stage of the program exactly once"
                )
            before = list(program.stage_ids)
            program.stage_ids = list(stage_ids)
            program.updated_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "program.reorder_stages", "programs", program.id,
                              before={"stage_ids": before}, after={"stage_ids": list(stage_ids)})
        return program

    def update_stage(self, actor: UserRecord, stage_id: str, patch: Dict[str, Any]) -> Stage:
        self.access.require(actor, "programs.manage")

        unknown = [key for key in patch if key not in STAGE_PATCH_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown stage fields: {', '.join(unknown)}")
        if "config" in patch:
            self._require_valid_form_config(patch["config"])

        with self.state_manager.transaction():
            stage = self._get_stage(stage_id)
            before = stage.model_dump(mode="json", include=set(patch))
            for key, value in patch.items():
                if key == "automations":
                    value = [Automation(**a) if isinstance(a, dict) else a for a in value or []]
                setattr(stage, key, value)
            after = stage.model_dump(mode="json", include=set(patch))

        self._log_audit_event(actor, "stage.update", "stages", stage.id, before=before, after=after)
        return stage

    def update_stage_role_access(
        self, actor: UserRecord, stage_id: str, role_access: List[Dict[str, Any]]
    ) -> Stage:
        """Replace a stage's per-role access entries."""
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            stage = self._get_stage(stage_id)
            before = [ra.model_dump() for ra in stage.role_access]
            stage.role_access = [RoleAccess(**ra) for ra in role_access]

        self._log_audit_event(actor, "stage.update_role_access", "stages", stage.id,
                              before={"role_access": before}, after={"role_access": role_access})
        return stage

    def delete_stage(self, actor: UserRecord, stage_id: str) -> Stage:
        """
        Soft-delete a stage and remove it from its program's order.

        Blocks referenced by the stage are left in place.

        Raises:
            ConflictError: If an active process currently sits on the stage
        """
        self.access.require(actor, "programs.manage")

        with self.state_manager.transaction():
            stage = self._get_stage(stage_id)
            occupied = self.state_manager.query(
                "processes", lambda p: not p.is_deleted and p.current_stage_id == stage.id
            )
            if occupied:
                raise ConflictError(
                    f"Stage {stage.id} is the current stage of {len(occupied)} active processes"
                )

            program = self.state_manager.get_program(stage.program_id)
            if program and stage.id in program.stage_ids:
                program.stage_ids.remove(stage.id)
                program.updated_at = datetime.now(timezone.utc)

            stage.is_deleted = True
            stage.deleted_at = datetime.now(timezone.utc)

        self._log_audit_event(actor, "stage.delete", "stages", stage.id,
                              metadata={"program_id": stage.program_id})
        return stage

    def get_program_stages(self, program_id: str) -> List[Stage]:
        """Ordered, non-deleted stages of a program."""
        return self._pipeline(self._get_program(program_id))

    def get_visible_program_stages(self, viewer: UserRecord, program_id: str) -> List[StageView]:
        """
        Stages the viewer's role may see, with edit rights.

        Admins see every stage with full access. A stage with role access
        entries hides itself from roles that have no entry.
        """
        viewer = self._require_user(viewer)
        role = self.access.role_for(viewer)

        views = []
        for stage in self.get_program_stages(program_id):
            if role.is_admin or not stage.role_access:
                views.append(StageView(stage=stage))
                continue

            entry = next((ra for ra in stage.role_access if ra.role_slug == role.slug), None)
            if entry is None or not entry.can_view:
                continue
            views.append(StageView(stage=stage, can_view=True, can_edit=entry.can_edit))
        return views
