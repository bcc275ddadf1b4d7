"""
FastAPI Server for the Program Engine.

Provides REST API endpoints for program and stage definition, process
creation and submission, block management, and audit retrieval.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..exceptions import EngineError, RateLimitedError, ValidationError
from ..models import (
    AuditRecord,
    BlockInstance,
    BlockView,
    PasscodeResult,
    Process,
    Program,
    Role,
    Stage,
    StageTemplate,
    StageView,
    UserRecord,
)
from ..runtime import ProgramEngine

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses
class ProgramCreateRequest(BaseModel):
    """Program creation request."""
    name: str = Field(..., description="Program name")
    slug: str = Field(..., description="Unique slug")
    type: Optional[str] = Field(None, description="Program type, defaults to generic")
    start_date: datetime = Field(..., description="Program start (ISO format)")
    end_date: Optional[datetime] = Field(None, description="Program end (ISO format)")
    config: Optional[Dict[str, Any]] = None
    automations: Optional[List[Dict[str, Any]]] = None
    allow_start_by: Optional[List[str]] = Field(None, description="Role slugs allowed to start")


class ProgramPatchRequest(BaseModel):
    """Partial program update. Only fields that are set are applied."""
    name: Optional[str] = None
    slug: Optional[str] = None
    type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    automations: Optional[List[Dict[str, Any]]] = None
    view_config: Optional[Dict[str, Dict[str, Any]]] = None
    allow_start_by: Optional[List[str]] = None


class StageCreateRequest(BaseModel):
    """Stage creation request, optionally from a template."""
    name: Optional[str] = None
    type: Optional[str] = None
    template_id: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    block_ids: Optional[List[str]] = None
    automations: Optional[List[Dict[str, Any]]] = None
    original_stage_id: Optional[str] = None
    role_access: Optional[List[Dict[str, Any]]] = None


class StagePatchRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    block_ids: Optional[List[str]] = None
    automations: Optional[List[Dict[str, Any]]] = None
    original_stage_id: Optional[str] = None


class TemplateCreateRequest(BaseModel):
    name: str
    type: str = "form"
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    block_ids: Optional[List[str]] = None
    automations: Optional[List[Dict[str, Any]]] = None


class ProcessCreateRequest(BaseModel):
    """Process creation request."""
    program_id: str = Field(..., description="Program to run through")
    type: str = Field(..., description="Process type")
    user_id: Optional[str] = Field(None, description="Start on behalf of this user")


class SubmissionRequest(BaseModel):
    """Stage submission request."""
    stage_id: str = Field(..., description="Current stage id or original stage id")
    data: Dict[str, Any] = Field(default_factory=dict)


class StatusRequest(BaseModel):
    status: str


class BlockCreateRequest(BaseModel):
    type: str
    config: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    role_access: Optional[List[Dict[str, Any]]] = None


class BlockPatchRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    role_access: Optional[List[Dict[str, Any]]] = None


class PasscodeRequest(BaseModel):
    passcode: str


class UserCreateRequest(BaseModel):
    name: str
    email: str
    system_role: str = "guest"
    clearance_level: int = 0


class UserCreatedResponse(BaseModel):
    """Registered user with its bearer token."""
    user: UserRecord
    token: str


# Global components (initialized on startup)
engine: Optional[ProgramEngine] = None


def load_config() -> Dict[str, Any]:
    """Read the engine config from the JSON file named by PROGRAM_ENGINE_CONFIG."""
    config: Dict[str, Any] = {"automation_mode": "deferred"}
    path = os.environ.get("PROGRAM_ENGINE_CONFIG")
    if path:
        with open(path, encoding="utf-8") as f:
            config.update(json.load(f))
    return config


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global engine

    if engine is None:
        logger.info("Initializing Program Engine API server components")
        config = load_config()
        engine = ProgramEngine(config)

        admin_token = config.get("bootstrap_admin_token")
        if admin_token:
            admin_email = config.get("bootstrap_admin_email", "admin@example.com")
            admin = engine.state_manager.get_user_by_email(admin_email)
            if admin is None:
                admin = engine.register_user("Administrator", admin_email, system_role="admin")
                logger.info("Registered bootstrap administrator")
            engine.identity.issue_token(admin.id, admin_token)

    logger.info("Program Engine API server components initialized")

    yield

    logger.info("Shutting down Program Engine API server")


# Create FastAPI app
app = FastAPI(
    title="Program Engine API",
    description="HR program and process workflow engine",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request, exc: EngineError):
    """Report engine errors verbatim with their HTTP status."""
    content: Dict[str, Any] = {"detail": exc.message}
    headers = None
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    if isinstance(exc, RateLimitedError) and exc.reset_at:
        content["reset_at"] = exc.reset_at.isoformat()
        retry_after = max(0, int((exc.reset_at - datetime.now(timezone.utc)).total_seconds()))
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def get_engine() -> ProgramEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not available")
    return engine


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def get_current_user(
    authorization: Optional[str] = Header(None),
    program_engine: ProgramEngine = Depends(get_engine),
) -> UserRecord:
    """Resolve the bearer token to a user, or fail with 401."""
    return program_engine.identity.resolve(_bearer_token(authorization))


def get_optional_user(
    authorization: Optional[str] = Header(None),
    program_engine: ProgramEngine = Depends(get_engine),
) -> Optional[UserRecord]:
    token = _bearer_token(authorization)
    if not token:
        return None
    return program_engine.identity.resolve(token)


def _schedule_automations(background_tasks: BackgroundTasks, program_engine: ProgramEngine):
    """Run queued automations after the response has been sent."""
    background_tasks.add_task(program_engine.outbox.drain)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Program Engine API", "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if engine is not None else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "state_manager": engine is not None and engine.state_manager is not None,
            "role_store": engine is not None and engine.role_store is not None,
            "audit_logger": engine is not None and engine.audit_logger is not None,
            "automation_outbox": engine is not None and engine.outbox is not None,
        }
    }


@app.get("/stats")
async def get_system_stats(
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Get document counts and automation outbox statistics."""
    program_engine.access.require(user, "processes.view_all")
    return {"timestamp": datetime.now(timezone.utc).isoformat(), **program_engine.get_stats()}


# Users and roles

@app.post("/users", response_model=UserCreatedResponse, status_code=201)
async def create_user(
    request: UserCreateRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Register a user and issue a bearer token (administrators only)."""
    program_engine.access.require(user, "users.manage")
    created = program_engine.register_user(
        request.name, request.email, system_role=request.system_role,
        clearance_level=request.clearance_level,
    )
    return UserCreatedResponse(user=created, token=program_engine.identity.issue_token(created.id))


@app.get("/me", response_model=UserRecord)
async def get_me(user: UserRecord = Depends(get_current_user)):
    return user


@app.get("/roles", response_model=List[Role])
async def list_roles(program_engine: ProgramEngine = Depends(get_engine)):
    return program_engine.role_store.list_roles()


# Programs

@app.post("/programs", response_model=Program, status_code=201)
async def create_program(
    request: ProgramCreateRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Create an inactive program."""
    return program_engine.programs.create_program(
        user,
        name=request.name,
        slug=request.slug,
        start_date=request.start_date,
        program_type=request.type,
        end_date=request.end_date,
        config=request.config,
        automations=request.automations,
        allow_start_by=request.allow_start_by,
    )


@app.get("/programs", response_model=List[Program])
async def list_programs(
    type: Optional[str] = Query(None, description="Filter by program type"),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """List programs visible to the caller's role."""
    return program_engine.programs.get_visible_programs(user, program_type=type)


@app.get("/programs/active", response_model=Optional[Program])
async def get_active_program(program_engine: ProgramEngine = Depends(get_engine)):
    return program_engine.programs.get_active_program()


@app.get("/programs/{program_id}", response_model=Program)
async def get_program(
    program_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    program = program_engine.programs.get_program_for_role(user, program_id)
    if not program:
        raise HTTPException(status_code=404, detail=f"Program {program_id} not found")
    return program


@app.patch("/programs/{program_id}", response_model=Program)
async def update_program(
    program_id: str,
    request: ProgramPatchRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.update_program(user, program_id, request.model_dump(exclude_unset=True))


@app.post("/programs/{program_id}/activate", response_model=Program)
async def activate_program(
    program_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.activate_program(user, program_id)


@app.post("/programs/{program_id}/deactivate", response_model=Program)
async def deactivate_program(
    program_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.deactivate_program(user, program_id)


@app.put("/programs/{program_id}/view-config", response_model=Program)
async def update_view_config(
    program_id: str,
    view_config: Dict[str, Dict[str, Any]] = Body(...),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.update_view_config(user, program_id, view_config)


# Stages and templates

@app.get("/programs/{program_id}/stages", response_model=List[StageView])
async def get_program_stages(
    program_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Stages of a program visible to the caller, with access masks."""
    return program_engine.programs.get_visible_program_stages(user, program_id)


@app.post("/programs/{program_id}/stages", response_model=Stage, status_code=201)
async def add_stage(
    program_id: str,
    request: StageCreateRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.add_stage_to_program(
        user,
        program_id,
        name=request.name,
        stage_type=request.type,
        template_id=request.template_id,
        description=request.description,
        config=request.config,
        block_ids=request.block_ids,
        automations=request.automations,
        original_stage_id=request.original_stage_id,
        role_access=request.role_access,
    )


@app.put("/programs/{program_id}/stages/order", response_model=Program)
async def reorder_stages(
    program_id: str,
    stage_ids: List[str] = Body(...),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.reorder_stages(user, program_id, stage_ids)


@app.patch("/stages/{stage_id}", response_model=Stage)
async def update_stage(
    stage_id: str,
    request: StagePatchRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.update_stage(user, stage_id, request.model_dump(exclude_unset=True))


@app.put("/stages/{stage_id}/role-access", response_model=Stage)
async def update_stage_role_access(
    stage_id: str,
    role_access: List[Dict[str, Any]] = Body(...),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.update_stage_role_access(user, stage_id, role_access)


@app.delete("/stages/{stage_id}", response_model=Stage)
async def delete_stage(
    stage_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.delete_stage(user, stage_id)


@app.get("/stages/{stage_id}/blocks", response_model=List[BlockView])
async def get_stage_blocks(
    stage_id: str,
    user: Optional[UserRecord] = Depends(get_optional_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Blocks of a stage as the caller may see them; anonymous callers get none."""
    return program_engine.blocks.get_stage_blocks(stage_id, user)


@app.get("/templates", response_model=List[StageTemplate])
async def list_templates(
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.list_templates()


@app.post("/templates", response_model=StageTemplate, status_code=201)
async def create_template(
    request: TemplateCreateRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.programs.create_template(
        user,
        name=request.name,
        stage_type=request.type,
        description=request.description,
        config=request.config,
        block_ids=request.block_ids,
        automations=request.automations,
    )


# Processes

@app.post("/processes", response_model=Process, status_code=201)
async def create_process(
    request: ProcessCreateRequest,
    background_tasks: BackgroundTasks,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Start a process; automations run after the response."""
    process = program_engine.processes.create_process(
        user, request.program_id, request.type, target_user_id=request.user_id
    )
    _schedule_automations(background_tasks, program_engine)
    return process


@app.get("/processes", response_model=List[Process])
async def list_processes(
    type: Optional[str] = Query(None, description="Filter by process type"),
    program_id: Optional[str] = Query(None, description="Filter by program"),
    status: Optional[str] = Query(None, description="Filter by status"),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.processes.list_processes(
        user, process_type=type, program_id=program_id, status=status
    )


@app.get("/processes/mine", response_model=List[Process])
async def get_my_processes(
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.processes.get_my_processes(user)


@app.get("/processes/{process_id}", response_model=Process)
async def get_process(
    process_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.processes.get_process(user, process_id)


@app.post("/processes/{process_id}/submit", response_model=Process)
async def submit_stage(
    process_id: str,
    request: SubmissionRequest,
    background_tasks: BackgroundTasks,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Submit data for the current stage and advance the process."""
    process = program_engine.processes.submit_stage(user, process_id, request.stage_id, request.data)
    _schedule_automations(background_tasks, program_engine)
    return process


@app.post("/processes/{process_id}/status", response_model=Process)
async def update_process_status(
    process_id: str,
    request: StatusRequest,
    background_tasks: BackgroundTasks,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    process = program_engine.processes.update_status(user, process_id, request.status)
    _schedule_automations(background_tasks, program_engine)
    return process


@app.post("/processes/{process_id}/accept-offer", response_model=Process)
async def accept_offer(
    process_id: str,
    background_tasks: BackgroundTasks,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    process = program_engine.processes.accept_offer(user, process_id)
    _schedule_automations(background_tasks, program_engine)
    return process


@app.delete("/processes/{process_id}", response_model=Process)
async def delete_process(
    process_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.processes.soft_delete_process(user, process_id)


# Blocks

@app.post("/blocks", response_model=BlockInstance, status_code=201)
async def create_block(
    request: BlockCreateRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.create_block(
        user, request.type, request.config, name=request.name, role_access=request.role_access
    )


@app.post("/blocks/batch", response_model=List[BlockInstance], status_code=201)
async def create_blocks_batch(
    requests: List[BlockCreateRequest] = Body(...),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.create_blocks_batch(user, [r.model_dump() for r in requests])


@app.patch("/blocks/{block_id}", response_model=BlockInstance)
async def update_block(
    block_id: str,
    request: BlockPatchRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.update_block(
        user, block_id, config=request.config, name=request.name, role_access=request.role_access
    )


@app.post("/blocks/{block_id}/fork", response_model=BlockInstance, status_code=201)
async def fork_block(
    block_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.fork_block(user, block_id)


@app.post("/blocks/{block_id}/duplicate", response_model=BlockInstance, status_code=201)
async def duplicate_block(
    block_id: str,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.duplicate_block(user, block_id)


@app.post("/blocks/{block_id}/passcode", response_model=PasscodeResult)
async def validate_passcode(
    block_id: str,
    request: PasscodeRequest,
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    return program_engine.blocks.validate_passcode(user, block_id, request.passcode)


# Audit

@app.get("/audit", response_model=List[AuditRecord])
async def get_audit_logs(
    entity_id: Optional[str] = Query(None, description="Filter by entity ID"),
    user_id: Optional[str] = Query(None, description="Filter by acting user"),
    action: Optional[str] = Query(None, description="Filter by action"),
    limit: int = Query(100, description="Maximum number of results"),
    user: UserRecord = Depends(get_current_user),
    program_engine: ProgramEngine = Depends(get_engine),
):
    """Get audit records, most recent first (administrators only)."""
    program_engine.access.require(user, "audit.view")
    return program_engine.audit_logger.get_events(
        user_id=user_id, entity_id=entity_id, action=action, limit=limit
    )


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "program_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server()
