# routers/reference.py — Regions, project statuses and project types
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from authorization import require_permission
from database import get_db_session
from reference_service import ReferenceCatalog, REGIONS, PROJECT_STATUSES, PROJECT_TYPES


class ReferenceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ReferenceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class ReferenceOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


def _to_out(item) -> ReferenceOut:
    return ReferenceOut(id=item.id, name=item.name, description=getattr(item, "description", None))


def build_router(prefix: str, tag: str, catalog: ReferenceCatalog) -> APIRouter:
    """CRUD router over one reference catalog; reads are open to any signed-in user"""
    router = APIRouter(prefix=prefix, tags=[tag])

    @router.get("", response_model=List[ReferenceOut])
    async def list_items(
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ):
        return [_to_out(i) for i in await catalog.list(db)]

    @router.post("", response_model=ReferenceOut, status_code=201)
    async def create_item(
        data: ReferenceCreate,
        user: CurrentUser = Depends(require_permission("reference-data:manage")),
        db: AsyncSession = Depends(get_db_session),
    ):
        return _to_out(await catalog.create(db, data.model_dump(exclude_unset=True)))

    @router.get("/{item_id}", response_model=ReferenceOut)
    async def get_item(
        item_id: int,
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ):
        return _to_out(await catalog.get(db, item_id))

    @router.patch("/{item_id}", response_model=ReferenceOut)
    async def update_item(
        item_id: int,
        data: ReferenceUpdate,
        user: CurrentUser = Depends(require_permission("reference-data:manage")),
        db: AsyncSession = Depends(get_db_session),
    ):
        return _to_out(await catalog.update(db, item_id, data.model_dump(exclude_unset=True)))

    @router.delete("/{item_id}")
    async def delete_item(
        item_id: int,
        user: CurrentUser = Depends(require_permission("reference-data:manage")),
        db: AsyncSession = Depends(get_db_session),
    ):
        await catalog.delete(db, item_id)
        return {"status": "deleted", "id": item_id}

    return router


regions_router = build_router("/api/v1/regions", "Regions", REGIONS)
statuses_router = build_router("/api/v1/project-statuses", "Project Statuses", PROJECT_STATUSES)
types_router = build_router("/api/v1/project-types", "Project Types", PROJECT_TYPES)
