"""FastAPI dependencies."""

from fastapi import Depends, Header, HTTPException, Request, status

from botforge.models import DeploymentRecord
from botforge.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    """Orchestrator built by the app lifespan (or injected by create_app)."""
    return request.app.state.orchestrator


async def get_user_id(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> str | None:
    """Caller identity; None means anonymous mode with access to everything."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


async def get_owned_deployment(
    deployment_id: str,
    user_id: str | None = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeploymentRecord:
    """Load a deployment the caller may act on.

    Raises 404 if unknown (via NotFoundError), 403 if owned by another user.
    """
    record = orchestrator.get(deployment_id)
    if user_id is not None and record.user_id is not None and record.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Deployment belongs to another user",
        )
    return record
