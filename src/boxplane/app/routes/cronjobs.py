"""Cronjob endpoints.

Response contracts:
  POST   /api/v1/boxes/{box_id}/cronjobs     -> 201 { cronjob }
  GET    /api/v1/boxes/{box_id}/cronjobs     -> 200 { cronjobs: [...] }
  PATCH  /api/v1/cronjobs/{id}               -> 200 { cronjob }
  POST   /api/v1/cronjobs/{id}/toggle        -> 200 { cronjob }
  DELETE /api/v1/cronjobs/{id}               -> 200 { deleted: true }
  GET    /api/v1/cronjobs/{id}/executions    -> 200 { executions: [...] }
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..cronjobs.service import MAX_CRONJOB_NAME_LENGTH, CronjobService
from .deps import get_user_id


class CreateCronjobRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_CRONJOB_NAME_LENGTH)
    schedule: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    timezone: str = Field(default='UTC')


class UpdateCronjobRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=MAX_CRONJOB_NAME_LENGTH)
    schedule: str | None = Field(default=None, min_length=1)
    prompt: str | None = Field(default=None, min_length=1)
    timezone: str | None = None
    enabled: bool | None = None


def create_cronjobs_router(cronjobs: CronjobService) -> APIRouter:
    router = APIRouter(prefix='/api/v1', tags=['cronjobs'])

    @router.post('/boxes/{box_id}/cronjobs')
    async def create_cronjob(
        box_id: str,
        body: CreateCronjobRequest,
        user_id: str = Depends(get_user_id),
    ):
        cronjob = await cronjobs.create(
            box_id,
            name=body.name,
            schedule=body.schedule,
            prompt=body.prompt,
            timezone=body.timezone,
            user_id=user_id,
        )
        return JSONResponse(status_code=201, content={'cronjob': cronjob.to_public_dict()})

    @router.get('/boxes/{box_id}/cronjobs')
    async def list_cronjobs(box_id: str, user_id: str = Depends(get_user_id)):
        jobs = await cronjobs.list_by_box(box_id, user_id=user_id)
        return {'cronjobs': [c.to_public_dict() for c in jobs]}

    @router.patch('/cronjobs/{cronjob_id}')
    async def update_cronjob(
        cronjob_id: str,
        body: UpdateCronjobRequest,
        user_id: str = Depends(get_user_id),
    ):
        cronjob = await cronjobs.update(
            cronjob_id, body.model_dump(exclude_none=True), user_id=user_id,
        )
        return {'cronjob': cronjob.to_public_dict()}

    @router.post('/cronjobs/{cronjob_id}/toggle')
    async def toggle_cronjob(cronjob_id: str, user_id: str = Depends(get_user_id)):
        cronjob = await cronjobs.toggle(cronjob_id, user_id=user_id)
        return {'cronjob': cronjob.to_public_dict()}

    @router.delete('/cronjobs/{cronjob_id}')
    async def delete_cronjob(cronjob_id: str, user_id: str = Depends(get_user_id)):
        await cronjobs.delete(cronjob_id, user_id=user_id)
        return {'deleted': True}

    @router.get('/cronjobs/{cronjob_id}/executions')
    async def list_executions(
        cronjob_id: str,
        limit: int = Query(default=20, ge=1, le=100),
        user_id: str = Depends(get_user_id),
    ):
        executions = await cronjobs.list_executions(cronjob_id, user_id=user_id, limit=limit)
        return {'executions': [e.to_public_dict() for e in executions]}

    return router
