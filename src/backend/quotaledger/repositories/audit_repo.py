"""Repository for the quota_audit_entries table (the audit trail)."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quotaledger.models.quota import AuditEntry, new_id


class AuditEntryRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        quota_id: str,
        action: str,
        actor_id: str,
        details: dict[str, Any],
        target_actor_id: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=new_id("audit"),
            quota_id=quota_id,
            action=action,
            actor_id=actor_id,
            target_actor_id=target_actor_id,
            details=details,
            created_at=datetime.now(UTC),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry
