"""Repository for the quota_nodes table (the ledger).

Every read that precedes a capacity write goes through get_for_update(),
which issues SELECT ... FOR UPDATE so that concurrent operations on the
same node serialize on the row lock until the owning transaction ends.
Deleted rows are invisible to all lookups, and every lookup refreshes a row
already held in the session identity map (populate_existing).
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotaledger.errors import NotFoundError
from quotaledger.models.quota import STATUS_ACTIVE, STATUS_DELETED, QuotaNode


def _now() -> datetime:
    return datetime.now(UTC)


class QuotaNodeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, quota_id: str) -> QuotaNode:
        result = await self.session.execute(
            select(QuotaNode)
            .where(QuotaNode.id == quota_id, QuotaNode.status != STATUS_DELETED)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Quota '{quota_id}' not found")
        return row

    async def get_for_update(self, quota_id: str) -> QuotaNode:
        result = await self.session.execute(
            select(QuotaNode)
            .where(QuotaNode.id == quota_id, QuotaNode.status != STATUS_DELETED)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Quota '{quota_id}' not found")
        return row

    async def create(
        self,
        quota_id: str,
        name: str,
        description: str,
        kind: str,
        total_mb: int,
        parent_id: str | None,
        level: int,
        path: str,
        owner_id: str,
        organization_id: str,
        team_id: str | None,
    ) -> QuotaNode:
        now = _now()
        node = QuotaNode(
            id=quota_id,
            name=name,
            description=description,
            kind=kind,
            total_mb=total_mb,
            used_mb=0,
            allocated_mb=0,
            parent_id=parent_id,
            level=level,
            path=path,
            owner_id=owner_id,
            organization_id=organization_id,
            team_id=team_id,
            status=STATUS_ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(node)
        await self.session.flush()
        return node

    async def add_allocated(self, node: QuotaNode, delta_mb: int) -> QuotaNode:
        node.allocated_mb += delta_mb
        node.updated_at = _now()
        await self.session.flush()
        return node

    async def add_used(self, node: QuotaNode, delta_mb: int) -> QuotaNode:
        node.used_mb += delta_mb
        node.updated_at = _now()
        await self.session.flush()
        return node

    async def mark_deleted(self, node: QuotaNode) -> QuotaNode:
        now = _now()
        node.status = STATUS_DELETED
        node.deleted_at = now
        node.updated_at = now
        await self.session.flush()
        return node
