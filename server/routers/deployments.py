"""Deployment introspection and control API."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api/deployments", tags=["deployments"])


class CancelRequest(BaseModel):
    actor: Optional[str] = None


@router.get("")
async def list_deployments():
    """All deployments currently held by the registry."""
    registry = container.registry()
    return {
        "deployments": [deployment.to_dict() for _, deployment in registry.list()],
        "count": len(registry),
    }


@router.get("/{target_key}")
async def get_deployment(target_key: str):
    deployment = container.registry().get(target_key)
    if deployment is None:
        raise HTTPException(status_code=404, detail=f"No deployment for {target_key}")
    return deployment.to_dict()


@router.post("/{target_key}/cancel")
async def cancel_deployment(target_key: str, request: Optional[CancelRequest] = None):
    actor = request.actor if request else None
    if not container.registry().cancel(target_key, actor):
        raise HTTPException(status_code=404, detail=f"No deployment for {target_key}")
    logger.info("Deployment cancelled via API", target=target_key, actor=actor)
    return {"success": True, "target_key": target_key}


@router.delete("/{target_key}")
async def clear_deployment(target_key: str):
    """Evict a finished or not-yet-running deployment."""
    registry = container.registry()
    if registry.get(target_key) is None:
        raise HTTPException(status_code=404, detail=f"No deployment for {target_key}")
    if not registry.clear(target_key):
        raise HTTPException(status_code=409, detail="Deployment is running; cancel it instead")
    return {"success": True, "target_key": target_key}
