"""Quota service: all business logic for the hierarchical capacity ledger.

Capability checks go to the authorization oracle before any transaction is
opened; a refused check has no side effects. Repositories only do DB access.

Invariants, after every commit and for every node:
  used_mb + allocated_mb <= total_mb
  allocated_mb == sum(total_mb of direct active children)
Every node read that precedes a capacity write uses SELECT FOR UPDATE (via
repository), so concurrent writers on one node serialize on its row lock.
Locks are only ever taken child first, then parent.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quotaledger.auth import capabilities
from quotaledger.auth.actor import Actor
from quotaledger.auth.oracle import AuthorizationOracle
from quotaledger.errors import (
    BusyResourceError,
    HierarchyViolationError,
    InsufficientCapacityError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from quotaledger.models.quota import (
    ACTION_ALLOCATE,
    ACTION_CREATE,
    ACTION_GRANT_PERMISSION,
    ACTION_RELEASE,
    ACTION_USAGE_ALLOCATE,
    ACTION_USAGE_DEALLOCATE,
    KIND_ORGANIZATION,
    KIND_TEAM,
    OPERATION_ALLOCATE,
    OPERATION_DEALLOCATE,
    QUOTA_KINDS,
    QuotaNode,
    new_id,
)
from quotaledger.repositories.audit_repo import AuditEntryRepository
from quotaledger.repositories.quota_repo import QuotaNodeRepository
from quotaledger.repositories.usage_repo import UsageRecordRepository
from quotaledger.schemas.quota import AllocatedQuotaResponse, QuotaNodeResponse

log = logging.getLogger(__name__)


def _validate_kind(kind: str) -> None:
    if kind not in QUOTA_KINDS:
        raise ValidationError(
            f"Invalid quota kind '{kind}'. Allowed kinds: {sorted(QUOTA_KINDS)}"
        )


def _validate_positive(value: int, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer, got {value!r}")


def _validate_not_blank(value: str | None, field: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")


def _check_hierarchy(parent: QuotaNode, child_kind: str, target_id: str | None) -> None:
    """Organization nodes may feed any kind; team nodes only feed their own team."""
    if parent.kind == KIND_ORGANIZATION:
        return
    if parent.kind == KIND_TEAM and child_kind == KIND_TEAM:
        if parent.team_id is None or target_id != parent.team_id:
            raise HierarchyViolationError(
                f"Team quota '{parent.id}' can only allocate to its own team "
                f"'{parent.team_id}', not '{target_id}'"
            )
        return
    raise HierarchyViolationError(
        f"A {parent.kind} quota cannot allocate to a {child_kind} quota"
    )


def _check_balance(node: QuotaNode) -> None:
    if node.used_mb + node.allocated_mb > node.total_mb:
        raise InsufficientCapacityError(
            f"Quota '{node.id}' would be over-committed: used {node.used_mb} MB + "
            f"allocated {node.allocated_mb} MB > total {node.total_mb} MB"
        )


class QuotaService:
    def __init__(self, session: AsyncSession, oracle: AuthorizationOracle) -> None:
        self.session = session
        self.oracle = oracle
        self.repo = QuotaNodeRepository(session)
        self.usage_repo = UsageRecordRepository(session)
        self.audit_repo = AuditEntryRepository(session)

    # ── helpers ────────────────────────────────────────────────────────────────

    async def _require(self, actor: Actor, quota_id: str, capability: str, action: str) -> None:
        if not await self.oracle.check_capability(actor, quota_id, [capability]):
            raise PermissionDeniedError(
                f"User '{actor.user_id}' lacks '{capability}' on quota '{quota_id}' to {action}"
            )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        """One atomic unit: everything inside commits together or not at all."""
        try:
            async with self.session.begin():
                yield
        except SQLAlchemyError as exc:
            log.exception("Quota ledger transaction failed and was rolled back")
            raise StorageError("Storage transaction failed; no changes were committed") from exc

    async def _grant_admins(
        self, actor: Actor, quota_id: str, admin_actor_ids: list[str]
    ) -> list[str]:
        """Best-effort post-commit grants. Returns the admin ids that failed."""
        failed: list[str] = []
        for admin_id in admin_actor_ids:
            try:
                await self.oracle.grant_capability(
                    actor, admin_id, quota_id, [capabilities.ADMIN]
                )
            except Exception:
                log.warning(
                    "Post-commit admin grant failed for quota %s, admin %s "
                    "(allocation stays committed)",
                    quota_id,
                    admin_id,
                    exc_info=True,
                )
                failed.append(admin_id)
        return failed

    # ── Root quotas ────────────────────────────────────────────────────────────

    async def create_root(
        self,
        actor: Actor,
        name: str,
        description: str,
        kind: str,
        total_mb: int,
        team_id: str | None = None,
    ) -> QuotaNodeResponse:
        _validate_not_blank(name, "name")
        _validate_kind(kind)
        _validate_positive(total_mb, "total_mb")
        _validate_not_blank(actor.organization_id, "actor organization_id")
        if kind == KIND_TEAM:
            _validate_not_blank(team_id, "team_id for a team quota")

        quota_id = new_id("quota")
        async with self._transaction():
            node = await self.repo.create(
                quota_id=quota_id,
                name=name,
                description=description,
                kind=kind,
                total_mb=total_mb,
                parent_id=None,
                level=0,
                path=f"/{quota_id}",
                owner_id=actor.user_id,
                organization_id=actor.organization_id,
                team_id=team_id,
            )
            await self.oracle.register_resource(
                actor, quota_id, capabilities.QUOTA_RESOURCE_TYPE, name, description
            )
            await self.audit_repo.append(
                quota_id,
                ACTION_CREATE,
                actor.user_id,
                {"name": name, "kind": kind, "total_mb": total_mb},
            )

        log.info(
            "Root quota %s created: %d MB, kind=%s, organization=%s, owner=%s",
            quota_id,
            total_mb,
            kind,
            actor.organization_id,
            actor.user_id,
        )
        return QuotaNodeResponse.model_validate(node)

    # ── Parent → child allocation ──────────────────────────────────────────────

    async def allocate(
        self,
        actor: Actor,
        parent_id: str,
        name: str,
        description: str,
        kind: str,
        allocate_mb: int,
        target_id: str | None = None,
        admin_actor_ids: list[str] | None = None,
    ) -> AllocatedQuotaResponse:
        await self._require(actor, parent_id, capabilities.ADMIN, "allocate from it")

        admin_actor_ids = list(admin_actor_ids or [])
        _validate_not_blank(name, "name")
        _validate_kind(kind)
        _validate_positive(allocate_mb, "allocate_mb")
        if kind == KIND_TEAM:
            _validate_not_blank(target_id, "target_id for a team quota")
        for admin_id in admin_actor_ids:
            _validate_not_blank(admin_id, "admin actor id")

        child_id = new_id("quota")
        async with self._transaction():
            parent = await self.repo.get_for_update(parent_id)

            if parent.available_mb < allocate_mb:
                raise InsufficientCapacityError(
                    f"Quota '{parent_id}' has insufficient capacity. "
                    f"Available: {parent.available_mb} MB, requested: {allocate_mb} MB"
                )
            _check_hierarchy(parent, kind, target_id)

            child = await self.repo.create(
                quota_id=child_id,
                name=name,
                description=description,
                kind=kind,
                total_mb=allocate_mb,
                parent_id=parent.id,
                level=parent.level + 1,
                path=f"{parent.path}/{child_id}",
                # Owner is inherited from the parent, not taken from the caller.
                owner_id=parent.owner_id,
                organization_id=parent.organization_id,
                team_id=target_id if kind == KIND_TEAM else parent.team_id,
            )
            await self.repo.add_allocated(parent, allocate_mb)
            _check_balance(parent)

            await self.oracle.register_resource(
                actor, child_id, capabilities.QUOTA_RESOURCE_TYPE, name, description
            )
            await self.audit_repo.append(
                child_id,
                ACTION_ALLOCATE,
                actor.user_id,
                {"parent_id": parent.id, "allocate_mb": allocate_mb, "name": name, "kind": kind},
            )

        response = AllocatedQuotaResponse.model_validate(child)
        response.failed_admin_grants = await self._grant_admins(actor, child_id, admin_actor_ids)

        log.info(
            "Allocated %d MB from quota %s to new %s quota %s (admins=%s, failed grants=%s)",
            allocate_mb,
            parent_id,
            kind,
            child_id,
            admin_actor_ids,
            response.failed_admin_grants,
        )
        return response

    async def release(self, actor: Actor, quota_id: str) -> None:
        await self._require(actor, quota_id, capabilities.ADMIN, "release it")

        async with self._transaction():
            node = await self.repo.get_for_update(quota_id)
            if node.used_mb > 0 or node.allocated_mb > 0:
                raise BusyResourceError(
                    f"Cannot release quota '{quota_id}' with active usage "
                    f"({node.used_mb} MB) or allocations ({node.allocated_mb} MB)"
                )

            if node.parent_id is not None:
                parent = await self.repo.get_for_update(node.parent_id)
                await self.repo.add_allocated(parent, -node.total_mb)

            await self.repo.mark_deleted(node)
            await self.audit_repo.append(
                quota_id,
                ACTION_RELEASE,
                actor.user_id,
                {"parent_id": node.parent_id, "returned_mb": node.total_mb},
            )

        log.info(
            "Quota %s released, %d MB returned to %s",
            quota_id,
            node.total_mb,
            node.parent_id or "nobody (root)",
        )

    # ── Usage accounting ───────────────────────────────────────────────────────

    async def allocate_usage(
        self, actor: Actor, quota_id: str, resource_id: str, usage_mb: int, reason: str = ""
    ) -> None:
        await self._require(actor, quota_id, capabilities.READ, "use it")
        _validate_not_blank(resource_id, "resource_id")
        _validate_positive(usage_mb, "usage_mb")

        async with self._transaction():
            node = await self.repo.get_for_update(quota_id)
            if node.available_mb < usage_mb:
                raise InsufficientCapacityError(
                    f"Quota '{quota_id}' has insufficient capacity. "
                    f"Available: {node.available_mb} MB, requested: {usage_mb} MB"
                )
            await self.repo.add_used(node, usage_mb)
            _check_balance(node)

            await self.usage_repo.append(
                quota_id, actor.user_id, resource_id, usage_mb, OPERATION_ALLOCATE, reason
            )
            await self.audit_repo.append(
                quota_id,
                ACTION_USAGE_ALLOCATE,
                actor.user_id,
                {"resource_id": resource_id, "usage_mb": usage_mb, "reason": reason},
            )

        log.info(
            "Usage of %d MB allocated on quota %s for resource %s by %s",
            usage_mb,
            quota_id,
            resource_id,
            actor.user_id,
        )

    async def deallocate_usage(
        self, actor: Actor, quota_id: str, resource_id: str, usage_mb: int, reason: str = ""
    ) -> None:
        await self._require(actor, quota_id, capabilities.READ, "use it")
        _validate_not_blank(resource_id, "resource_id")
        _validate_positive(usage_mb, "usage_mb")

        async with self._transaction():
            node = await self.repo.get_for_update(quota_id)
            if node.used_mb < usage_mb:
                raise ValidationError(
                    f"Cannot deallocate {usage_mb} MB from quota '{quota_id}', "
                    f"only {node.used_mb} MB in use"
                )
            await self.repo.add_used(node, -usage_mb)

            await self.usage_repo.append(
                quota_id, actor.user_id, resource_id, usage_mb, OPERATION_DEALLOCATE, reason
            )
            await self.audit_repo.append(
                quota_id,
                ACTION_USAGE_DEALLOCATE,
                actor.user_id,
                {"resource_id": resource_id, "usage_mb": usage_mb, "reason": reason},
            )

        log.info(
            "Usage of %d MB deallocated on quota %s for resource %s by %s",
            usage_mb,
            quota_id,
            resource_id,
            actor.user_id,
        )

    # ── Reads and permissions ──────────────────────────────────────────────────

    async def get_node(self, actor: Actor, quota_id: str) -> QuotaNodeResponse:
        await self._require(actor, quota_id, capabilities.READ, "view it")

        async with self._transaction():
            node = await self.repo.get(quota_id)
            response = QuotaNodeResponse.model_validate(node)
        return response

    async def grant_permission(
        self,
        actor: Actor,
        quota_id: str,
        target_actor_id: str,
        granted: list[str],
    ) -> None:
        await self._require(actor, quota_id, capabilities.ADMIN, "grant permissions on it")
        _validate_not_blank(target_actor_id, "target_actor_id")
        if not granted:
            raise ValidationError("At least one capability must be granted")
        unknown = sorted(set(granted) - capabilities.GRANTABLE_CAPABILITIES)
        if unknown:
            raise ValidationError(
                f"Unknown capabilities {unknown}. "
                f"Grantable: {sorted(capabilities.GRANTABLE_CAPABILITIES)}"
            )

        async with self._transaction():
            await self.repo.get(quota_id)
            await self.oracle.grant_capability(actor, target_actor_id, quota_id, list(granted))
            await self.audit_repo.append(
                quota_id,
                ACTION_GRANT_PERMISSION,
                actor.user_id,
                {"capabilities": list(granted)},
                target_actor_id=target_actor_id,
            )

        log.info(
            "User %s granted %s on quota %s to %s",
            actor.user_id,
            granted,
            quota_id,
            target_actor_id,
        )
