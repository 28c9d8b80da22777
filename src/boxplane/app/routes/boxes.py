"""Box endpoints: create, list, get, delete, deploy, and step progress.

Response contracts:
  POST   /api/v1/boxes                 -> 201 { box }
  GET    /api/v1/boxes                 -> 200 { boxes: [...] }
  GET    /api/v1/boxes/{id}            -> 200 { box }
  DELETE /api/v1/boxes/{id}            -> 200 { box }
  POST   /api/v1/boxes/{id}/deploy     -> 202 { box, deployment_attempt }
  GET    /api/v1/boxes/{id}/steps      -> 200 { deployment_attempt, steps: [...] }

Errors are raised as ``BoxPlaneError`` and rendered by the app-level
exception handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..boxes.service import MAX_NAME_LENGTH, BoxService
from ..deploy.orchestrator import DeployOrchestrator
from ..ledger.service import DeployStepService
from .deps import get_user_id


class CreateBoxRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    skills: list[str] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict)


def create_boxes_router(
    boxes: BoxService,
    steps: DeployStepService,
    orchestrator: DeployOrchestrator,
) -> APIRouter:
    router = APIRouter(prefix='/api/v1/boxes', tags=['boxes'])

    @router.post('')
    async def create_box(
        body: CreateBoxRequest,
        user_id: str = Depends(get_user_id),
    ):
        box = await boxes.create(
            user_id=user_id,
            name=body.name,
            skills=body.skills,
            env_vars=body.env_vars,
        )
        return JSONResponse(status_code=201, content={'box': box.to_public_dict()})

    @router.get('')
    async def list_boxes(user_id: str = Depends(get_user_id)):
        owned = await boxes.list_by_owner(user_id)
        return {'boxes': [b.to_public_dict() for b in owned]}

    @router.get('/{box_id}')
    async def get_box(box_id: str, user_id: str = Depends(get_user_id)):
        box = await boxes.get(box_id, user_id=user_id)
        return {'box': box.to_public_dict()}

    @router.delete('/{box_id}')
    async def delete_box(box_id: str, user_id: str = Depends(get_user_id)):
        box = await boxes.delete(box_id, user_id=user_id)
        return {'box': box.to_public_dict()}

    @router.post('/{box_id}/deploy')
    async def deploy_box(box_id: str, user_id: str = Depends(get_user_id)):
        """Start a deployment attempt (first deploy or retry after error)."""
        box = await orchestrator.deploy(box_id, user_id=user_id)
        return JSONResponse(
            status_code=202,
            content={
                'box': box.to_public_dict(),
                'deployment_attempt': box.deployment_attempt,
            },
        )

    @router.get('/{box_id}/steps')
    async def list_steps(
        box_id: str,
        attempt: int | None = Query(default=None, ge=1),
        user_id: str = Depends(get_user_id),
    ):
        """Ledger rows for one attempt (default: the current one)."""
        box = await boxes.get(box_id, user_id=user_id)
        wanted = attempt or box.deployment_attempt
        rows = await steps.list_steps_by_box(box.id, wanted)
        return {
            'deployment_attempt': wanted,
            'steps': [s.to_public_dict() for s in rows],
        }

    return router
