"""Deployments router."""

from fastapi import APIRouter, Depends, Query, status

from botforge.api.dependencies import get_orchestrator, get_owned_deployment, get_user_id
from botforge.api.schemas import DeploymentRead, DeployRequest, LogEntryRead
from botforge.models import DeploymentRecord
from botforge.orchestrator import Orchestrator

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=DeploymentRead, status_code=status.HTTP_201_CREATED)
async def create_deployment(
    deploy_in: DeployRequest,
    user_id: str | None = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeploymentRead:
    """Queue a new deployment; the pipeline runs in the background."""
    record = await orchestrator.deploy(
        deploy_in.bot_id,
        deploy_in.env_vars,
        user_id=user_id,
        alias=deploy_in.alias,
    )
    return DeploymentRead.from_record(record)


@router.get("", response_model=list[DeploymentRead])
async def list_deployments(
    user_id: str | None = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[DeploymentRead]:
    """List deployments, newest first. Filtered to the caller when X-User-ID is set."""
    return [DeploymentRead.from_record(r) for r in orchestrator.list(user_id=user_id)]


@router.get("/{deployment_id}", response_model=DeploymentRead)
async def get_deployment(
    record: DeploymentRecord = Depends(get_owned_deployment),
) -> DeploymentRead:
    return DeploymentRead.from_record(record)


@router.get("/{deployment_id}/logs", response_model=list[LogEntryRead])
async def get_deployment_logs(
    record: DeploymentRecord = Depends(get_owned_deployment),
    limit: int | None = Query(None, ge=1, description="Only the last N entries"),
) -> list[LogEntryRead]:
    """Deployment log, oldest first."""
    entries = list(record.logs)
    if limit is not None:
        entries = entries[-limit:]
    return [LogEntryRead.from_entry(e) for e in entries]


@router.post("/{deployment_id}/stop", response_model=DeploymentRead)
async def stop_deployment(
    record: DeploymentRecord = Depends(get_owned_deployment),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeploymentRead:
    record = await orchestrator.stop(record.id)
    return DeploymentRead.from_record(record)


@router.post("/{deployment_id}/reinstall", response_model=DeploymentRead)
async def reinstall_deployment(
    record: DeploymentRecord = Depends(get_owned_deployment),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeploymentRead:
    """Reinstall a panel-hosted deployment."""
    record = await orchestrator.reinstall(record.id)
    return DeploymentRead.from_record(record)


@router.delete("/{deployment_id}")
async def delete_deployment(
    record: DeploymentRecord = Depends(get_owned_deployment),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Release the deployment's resources and delete it."""
    await orchestrator.remove(record.id)
    return {"success": True}
