"""Repository for the quota_usage_records table (the usage journal).

Append-only: rows are inserted inside the caller's transaction and are
never updated or deleted.
"""

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from quotaledger.models.quota import UsageRecord, new_id


class UsageRecordRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        quota_id: str,
        user_id: str,
        resource_id: str,
        usage_mb: int,
        operation: str,
        reason: str,
    ) -> UsageRecord:
        record = UsageRecord(
            id=new_id("usage"),
            quota_id=quota_id,
            user_id=user_id,
            resource_id=resource_id,
            usage_mb=usage_mb,
            operation=operation,
            reason=reason,
            created_at=datetime.now(UTC),
        )
        self.session.add(record)
        await self.session.flush()
        return record
