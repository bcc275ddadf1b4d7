"""
Core data models for the Program Engine.

This module defines the Pydantic models used throughout the system
for programs, stages, processes, automations, block instances, roles,
users, and audit records.
"""

import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgramType(str, Enum):
    """Recognized program types."""
    RECRUITMENT_CYCLE = "recruitment_cycle"
    TRAINING_PROGRAM = "training_program"
    SURVEY_CAMPAIGN = "survey_campaign"
    PERFORMANCE_CYCLE = "performance_cycle"
    GENERIC = "generic"


class ProcessType(str, Enum):
    """Well-known process types. Programs may use custom types as well."""
    RECRUITMENT = "recruitment"
    ONBOARDING = "onboarding"
    RECOMMITMENT = "recommitment"
    LOA_REQUEST = "loa_request"
    EXIT_INTERVIEW = "exit_interview"
    SURVEY = "survey"
    PERFORMANCE_REVIEW = "performance_review"
    REQUEST = "request"


class ProcessStatus(str, Enum):
    """Well-known process statuses. Any custom string is also accepted."""
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    COMPLETED = "completed"
    ACCEPTED = "accepted"
    OFFER_ACCEPTED = "offer_accepted"


class StageType(str, Enum):
    """Built-in stage types."""
    STATIC = "static"
    FORM = "form"
    INTERVIEW = "interview"
    AGREEMENT = "agreement"
    COMPLETED = "completed"


class Trigger(str, Enum):
    """Automation trigger names emitted by the process state machine."""
    PROCESS_CREATED = "process_created"
    STAGE_SUBMISSION = "stage_submission"
    STATUS_CHANGE = "status_change"
    PROCESS_COMPLETED = "process_completed"
    OFFER_ACCEPTED = "offer_accepted"


class AutomationAction(BaseModel):
    """A single side effect executed when an automation matches."""
    type: str = Field(..., description="Action type (send_email, update_role, update_status, ...)")
    payload: Dict[str, Any] = Field(default_factory=dict)


class Automation(BaseModel):
    """Declarative trigger/condition/action rule attached to a program or stage."""
    trigger: str = Field(..., description="Trigger name the rule listens to")
    conditions: Optional[Dict[str, Any]] = Field(None, description="Flat equality conditions")
    actions: List[AutomationAction] = Field(default_factory=list)


class FormField(BaseModel):
    """Field definition inside a stage's form configuration."""
    id: str
    label: Optional[str] = None
    type: str = Field("text", description="text, email, number, select, decision, ...")
    required: bool = False
    options: Optional[List[str]] = None


class RoleAccess(BaseModel):
    """Per-role visibility and edit rights for a stage or block."""
    role_slug: str
    can_view: bool = True
    can_edit: bool = True


class ViewConfigEntry(BaseModel):
    """Per-role presentation settings for a program."""
    model_config = {"extra": "allow"}

    visible: bool = True
    card_title: Optional[str] = None


class Program(BaseModel):
    """A named, slugged workflow definition holding an ordered list of stages."""
    id: str = Field(default_factory=_new_id)
    name: str = Field(..., description="Human-readable program name")
    slug: str = Field(..., description="Globally unique URL-safe identifier")
    type: str = Field(ProgramType.GENERIC.value, description="Program type")
    start_date: datetime
    end_date: Optional[datetime] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = False
    stage_ids: List[str] = Field(default_factory=list)
    automations: List[Automation] = Field(default_factory=list)
    view_config: Dict[str, ViewConfigEntry] = Field(default_factory=dict)
    allow_start_by: Optional[List[str]] = Field(None, description="Role slugs allowed to start a process")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Stage(BaseModel):
    """One step of a program."""
    id: str = Field(default_factory=_new_id)
    program_id: str
    name: str
    type: str = StageType.FORM.value
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    block_ids: List[str] = Field(default_factory=list)
    automations: List[Automation] = Field(default_factory=list)
    role_access: List[RoleAccess] = Field(default_factory=list)
    original_stage_id: Optional[str] = Field(None, description="Alias accepted when submitting")
    source_template_id: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def form_config(self) -> List[FormField]:
        """Form fields declared in the stage config."""
        return [FormField(**field) for field in self.config.get("form_config") or []]


class StageTemplate(BaseModel):
    """Reusable stage definition cloned into programs."""
    id: str = Field(default_factory=_new_id)
    name: str
    type: str = StageType.FORM.value
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    block_ids: List[str] = Field(default_factory=list)
    automations: List[Automation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class Process(BaseModel):
    """A single user's run through a program."""
    id: str = Field(default_factory=_new_id)
    user_id: str
    program_id: str
    type: str
    status: str = ProcessStatus.IN_PROGRESS.value
    current_stage_id: str
    data: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    stage_flow_snapshot: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    is_deleted: bool = False


class BlockInstance(BaseModel):
    """A concrete, versioned content/input block."""
    id: str = Field(default_factory=_new_id)
    type: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    parent_id: Optional[str] = Field(None, description="Block this one was copied from")
    role_access: List[RoleAccess] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def copy_as(self, name: Optional[str] = None) -> "BlockInstance":
        """
        Create an independent copy of this block.

        The copy gets a new id, version 1, ``parent_id`` pointing at this
        block, and deep copies of config and role access.

        Args:
            name: Name for the copy, defaults to this block's name

        Returns:
            The new, unsaved BlockInstance
        """
        return BlockInstance(
            type=self.type,
            name=name if name is not None else self.name,
            config=copy.deepcopy(self.config),
            version=1,
            parent_id=self.id,
            role_access=[ra.model_copy() for ra in self.role_access],
        )


class BlockView(BaseModel):
    """A block as presented to a particular viewer."""
    id: str
    type: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    parent_id: Optional[str] = None
    read_only: bool = False


class StageView(BaseModel):
    """A stage together with the viewer's access mask."""
    stage: Stage
    can_view: bool = True
    can_edit: bool = True


class PasscodeResult(BaseModel):
    """Outcome of an access gate passcode check."""
    success: bool
    error: Optional[str] = None


class Role(BaseModel):
    """Capability set attached to a system role slug."""
    slug: str
    name: str
    allowed_process_types: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list, description="Capability strings, '*' for all")
    ui_permissions: List[str] = Field(default_factory=list)
    default_dashboard_slug: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return "*" in self.permissions

    def has_capability(self, capability: str) -> bool:
        """Check whether this role grants a capability."""
        return self.is_admin or capability in self.permissions

    def can_start(self, process_type: str) -> bool:
        return self.is_admin or "*" in self.allowed_process_types or process_type in self.allowed_process_types


class UserProfile(BaseModel):
    """Mutable profile data updated by automations."""
    model_config = {"extra": "allow"}

    status: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class UserRecord(BaseModel):
    """An identity known to the engine."""
    id: str = Field(default_factory=_new_id)
    name: str
    email: str
    system_role: str = "guest"
    clearance_level: int = 0
    profile: UserProfile = Field(default_factory=UserProfile)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Basic email validation."""
        if "@" not in v:
            raise ValueError("Invalid email format")
        return v


class AuditRecord(BaseModel):
    """Append-only audit entry for a state change."""
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    user_id: Optional[str] = Field(None, description="Actor that performed the action")
    action: str = Field(..., description="Dotted action name, e.g. process.advance")
    entity_type: str = Field(..., description="Kind of entity affected")
    entity_id: str
    changes: Optional[Dict[str, Any]] = Field(None, description="before/after snapshot")
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Type aliases for convenience
Programs = List[Program]
Processes = List[Process]
AuditRecords = List[AuditRecord]
