from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.models import Integration


class IntegrationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, integration_id: str) -> Optional[Integration]:
        return await self.db.get(Integration, integration_id)

    async def get_owned(self, integration_id: str, owner_id: str) -> Optional[Integration]:
        rows = await self.db.execute(
            select(Integration).where(
                Integration.id == integration_id,
                Integration.user_id == owner_id,
            )
        )
        return rows.scalars().first()

    async def list_for_owner(self, owner_id: str) -> List[Integration]:
        rows = await self.db.execute(
            select(Integration)
            .where(Integration.user_id == owner_id)
            .order_by(Integration.created_at.desc())
        )
        return list(rows.scalars().all())

    async def list_active(self) -> List[Integration]:
        rows = await self.db.execute(
            select(Integration).where(Integration.is_active.is_(True))
        )
        return list(rows.scalars().all())

    async def create(self, owner_id: str, **fields: Any) -> Integration:
        integration = Integration(user_id=owner_id, **fields)
        self.db.add(integration)
        await self.db.flush()
        return integration

    async def apply_changes(self, integration: Integration, changes: Dict[str, Any]) -> Integration:
        for key, value in changes.items():
            setattr(integration, key, value)
        await self.db.flush()
        return integration

    async def delete(self, integration: Integration) -> None:
        await self.db.delete(integration)
        await self.db.flush()

    async def stamp_synced(self, integration_id: str, when: datetime) -> None:
        await self.db.execute(
            update(Integration)
            .where(Integration.id == integration_id)
            .values(last_synced_at=when, updated_at=func.now())
        )
