from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from assistant_relay.application.api.dependencies import get_runtime, require_api_token
from assistant_relay.application.runtime import RelayRuntime
from assistant_relay.domain.context.state.project_registry import Project
from assistant_relay.domain.models.session_state import (
    EngineModel, PermissionMode, StoredMessage, ThinkingDepth, TokenUsageSummary
)
from assistant_relay.domain.orchestration.relay_service import RelayReply
from assistant_relay.infrastructure.store.supabase_client import StoreError

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_token)])

Runtime = Annotated[RelayRuntime, Depends(get_runtime)]


class ChatRequest(BaseModel):
    content: str = Field(min_length=1)
    image_path: Optional[str] = None
    team_mode: bool = False


class ModelUpdate(BaseModel):
    model: EngineModel


class ModeUpdate(BaseModel):
    mode: PermissionMode


class ThinkingUpdate(BaseModel):
    depth: ThinkingDepth


class VerboseUpdate(BaseModel):
    verbose: bool


class ProjectUpdate(BaseModel):
    project_id: Optional[str] = None


# REST endpoint for simple interactions
@router.post("/chat", response_model=RelayReply)
async def chat_endpoint(request: ChatRequest, runtime: Runtime):
    return await runtime.relay.handle_message(
        request.content,
        image_path=request.image_path,
        team_mode=request.team_mode
    )


@router.get("/session/status")
async def session_status(runtime: Runtime) -> Dict[str, Any]:
    return runtime.state.get_state().get_state_summary()


@router.get("/session/usage", response_model=TokenUsageSummary)
async def session_usage(runtime: Runtime):
    return runtime.state.get_token_usage_summary()


@router.post("/session/clear")
async def clear_session(runtime: Runtime) -> Dict[str, Any]:
    await runtime.state.clear()
    return {"status": "cleared"}


@router.put("/session/model")
async def update_model(update: ModelUpdate, runtime: Runtime) -> Dict[str, Any]:
    await runtime.state.set_model(update.model)
    return {"model": update.model.value}


@router.put("/session/mode")
async def update_mode(update: ModeUpdate, runtime: Runtime) -> Dict[str, Any]:
    await runtime.state.set_permission_mode(update.mode)
    return {"permission_mode": update.mode.value}


@router.put("/session/thinking")
async def update_thinking(update: ThinkingUpdate, runtime: Runtime) -> Dict[str, Any]:
    await runtime.state.set_thinking_depth(update.depth)
    return {"thinking_depth": update.depth.value}


@router.put("/session/verbose")
async def update_verbose(update: VerboseUpdate, runtime: Runtime) -> Dict[str, Any]:
    await runtime.state.set_verbose(update.verbose)
    return {"verbose": update.verbose}


@router.put("/session/project")
async def update_project(update: ProjectUpdate, runtime: Runtime) -> Dict[str, Any]:
    if update.project_id is not None and runtime.projects.get(update.project_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown project '{update.project_id}'")
    await runtime.state.set_project(update.project_id)
    return {"current_project_id": update.project_id}


@router.get("/projects", response_model=List[Project])
async def list_projects(runtime: Runtime):
    return runtime.projects.list_projects()


@router.get("/messages", response_model=List[StoredMessage])
async def recent_messages(runtime: Runtime, limit: int = Query(default=20, ge=1, le=200)):
    try:
        return await runtime.store.get_recent_messages(limit)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Context store unavailable: {e}")
