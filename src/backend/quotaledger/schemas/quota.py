"""Pydantic response schemas for quota nodes."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class QuotaNodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str
    kind: str

    total_mb: int
    used_mb: int
    allocated_mb: int
    available_mb: int

    parent_id: str | None
    level: int
    path: str

    owner_id: str
    organization_id: str
    team_id: str | None

    status: str
    created_at: datetime | None
    updated_at: datetime | None
    deleted_at: datetime | None = None


class AllocatedQuotaResponse(QuotaNodeResponse):
    """Child node created by an allocation.

    ``failed_admin_grants`` lists admin ids whose post-commit capability grant
    failed; the allocation itself is committed regardless.
    """

    failed_admin_grants: list[str] = []
