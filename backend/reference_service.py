# reference_service.py — Regions, project statuses and project types
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFoundError, ConflictError
from models import Region, ProjectStatus, ProjectType, Project

logger = logging.getLogger("projectdesk.reference")


class ReferenceCatalog:
    """Name-unique lookup table that projects point at with RESTRICT"""

    def __init__(self, model, label: str, project_column, fields: Tuple[str, ...] = ("name", "description")):
        self.model = model
        self.label = label
        self.project_column = project_column
        self.fields = fields

    async def _ensure_name_free(self, db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(self.model.id).where(self.model.name == name)
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            raise ConflictError(f"{self.label} '{name}' already exists")

    async def list(self, db: AsyncSession) -> List[Any]:
        result = await db.execute(select(self.model).order_by(self.model.name, self.model.id))
        return list(result.scalars().all())

    async def get(self, db: AsyncSession, item_id: int) -> Any:
        item = (await db.execute(
            select(self.model).where(self.model.id == item_id)
        )).scalar_one_or_none()
        if not item:
            raise NotFoundError(f"{self.label} not found")
        return item

    async def create(self, db: AsyncSession, data: Dict[str, Any]) -> Any:
        await self._ensure_name_free(db, data["name"])
        item = self.model(**{f: data.get(f) for f in self.fields if f in data})
        db.add(item)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f"{self.label} '{data['name']}' already exists")
        await db.refresh(item)
        logger.info(f"{self.label} {item.id} created: {item.name}")
        return item

    async def update(self, db: AsyncSession, item_id: int, data: Dict[str, Any]) -> Any:
        item = await self.get(db, item_id)
        if data.get("name") is not None and data["name"] != item.name:
            await self._ensure_name_free(db, data["name"], exclude_id=item_id)
        for field in self.fields:
            if field in data and not (field == "name" and data[field] is None):
                setattr(item, field, data[field])
        await db.commit()
        await db.refresh(item)
        return item

    async def delete(self, db: AsyncSession, item_id: int) -> None:
        await self.get(db, item_id)
        in_use = (await db.execute(
            select(func.count(Project.id)).where(self.project_column == item_id)
        )).scalar() or 0
        if in_use:
            raise ConflictError(f"{self.label} is used by {in_use} project(s)", project_count=in_use)
        await db.execute(delete(self.model).where(self.model.id == item_id))
        await db.commit()
        logger.info(f"{self.label} {item_id} deleted")


REGIONS = ReferenceCatalog(Region, "Region", Project.region_id, fields=("name",))
PROJECT_STATUSES = ReferenceCatalog(ProjectStatus, "Project status", Project.status_id)
PROJECT_TYPES = ReferenceCatalog(ProjectType, "Project type", Project.project_type_id)

DEFAULT_REGIONS = [
    "Almaty", "Astana", "Shymkent",
    "Almaty Region", "Akmola Region", "Aktobe Region", "Atyrau Region",
    "East Kazakhstan Region", "Jambyl Region", "West Kazakhstan Region",
    "Karaganda Region", "Kostanay Region", "Kyzylorda Region", "Mangystau Region",
    "Pavlodar Region", "North Kazakhstan Region", "Turkistan Region",
]
DEFAULT_PROJECT_STATUSES = ["New", "In progress", "On hold", "Completed", "Cancelled"]
DEFAULT_PROJECT_TYPES = ["Construction", "Design", "Maintenance"]
