"""Shared fixtures: an in-memory ledger that behaves like the real store.

InMemoryLedger holds committed QuotaNode rows plus the two append-only logs.
Each FakeSession stages its writes and only publishes them when its
transaction exits cleanly; get_for_update() takes a per-row asyncio.Lock that
is held until the transaction ends, mirroring SELECT ... FOR UPDATE. The
balance CHECK constraint is enforced at write time like the database would,
raising IntegrityError.
"""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from quotaledger.auth.actor import Actor
from quotaledger.auth.oracle import AuthorizationOracle
from quotaledger.errors import NotFoundError, UpstreamError
from quotaledger.models.quota import (
    STATUS_ACTIVE,
    STATUS_DELETED,
    AuditEntry,
    QuotaNode,
    UsageRecord,
    new_id,
)
from quotaledger.services.quota_service import QuotaService


def copy_node(node: QuotaNode) -> QuotaNode:
    return QuotaNode(**{c.key: getattr(node, c.key) for c in QuotaNode.__table__.columns})


class InMemoryLedger:
    def __init__(self) -> None:
        self.nodes: dict[str, QuotaNode] = {}
        self.usage: list[UsageRecord] = []
        self.audit: list[AuditEntry] = []
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def active_nodes(self) -> list[QuotaNode]:
        return [n for n in self.nodes.values() if n.status != STATUS_DELETED]

    def children_of(self, quota_id: str) -> list[QuotaNode]:
        return [n for n in self.active_nodes() if n.parent_id == quota_id]

    def audit_for(self, quota_id: str) -> list[AuditEntry]:
        return [e for e in self.audit if e.quota_id == quota_id]

    def assert_invariants(self) -> None:
        for node in self.active_nodes():
            assert node.used_mb >= 0 and node.allocated_mb >= 0
            assert node.used_mb + node.allocated_mb <= node.total_mb, node.id
            assert node.allocated_mb == sum(c.total_mb for c in self.children_of(node.id)), node.id
            if node.parent_id is None:
                assert node.level == 0
                assert node.path == f"/{node.id}"
            else:
                parent = self.nodes[node.parent_id]
                assert node.level == parent.level + 1
                assert node.path == f"{parent.path}/{node.id}"
                assert node.organization_id == parent.organization_id


class FakeTransaction:
    def __init__(self, session: "FakeSession") -> None:
        self.session = session
        self.staged: dict[str, QuotaNode] = {}
        self.usage: list[UsageRecord] = []
        self.audit: list[AuditEntry] = []
        self.held: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> None:
        if self.session.tx is not None:
            raise RuntimeError("A transaction is already begun on this session")
        self.session.tx = self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        ledger = self.session.ledger
        try:
            if exc_type is None:
                for quota_id, node in self.staged.items():
                    ledger.nodes[quota_id] = copy_node(node)
                ledger.usage.extend(self.usage)
                ledger.audit.extend(self.audit)
        finally:
            for lock in self.held.values():
                lock.release()
            self.session.tx = None
        return False


class FakeSession:
    def __init__(self, ledger: InMemoryLedger) -> None:
        self.ledger = ledger
        self.tx: FakeTransaction | None = None

    def begin(self) -> FakeTransaction:
        return FakeTransaction(self)


def _check_row(node: QuotaNode) -> None:
    if node.used_mb < 0 or node.allocated_mb < 0 or node.used_mb + node.allocated_mb > node.total_mb:
        raise IntegrityError(
            "UPDATE quota_nodes", {}, Exception("violates check constraint ck_quota_nodes_balance")
        )


class FakeQuotaNodeRepository:
    def __init__(self, session: FakeSession) -> None:
        self.session = session

    @property
    def _tx(self) -> FakeTransaction:
        assert self.session.tx is not None, "ledger access outside a transaction"
        return self.session.tx

    def _visible(self, quota_id: str) -> QuotaNode:
        node = self._tx.staged.get(quota_id) or self.session.ledger.nodes.get(quota_id)
        if node is None or node.status == STATUS_DELETED:
            raise NotFoundError(f"Quota '{quota_id}' not found")
        return node

    async def get(self, quota_id: str) -> QuotaNode:
        return copy_node(self._visible(quota_id))

    async def get_for_update(self, quota_id: str) -> QuotaNode:
        tx = self._tx
        if quota_id not in tx.held:
            lock = self.session.ledger.locks[quota_id]
            await lock.acquire()
            tx.held[quota_id] = lock
        # let concurrent transactions run up to their own lock request
        await asyncio.sleep(0)
        node = tx.staged.get(quota_id)
        if node is None:
            node = copy_node(self._visible(quota_id))
            tx.staged[quota_id] = node
        elif node.status == STATUS_DELETED:
            raise NotFoundError(f"Quota '{quota_id}' not found")
        return node

    async def create(self, quota_id: str, **fields: Any) -> QuotaNode:
        now = datetime.now(UTC)
        node = QuotaNode(
            id=quota_id,
            used_mb=0,
            allocated_mb=0,
            status=STATUS_ACTIVE,
            created_at=now,
            updated_at=now,
            deleted_at=None,
            **fields,
        )
        self._tx.staged[quota_id] = node
        return node

    async def add_allocated(self, node: QuotaNode, delta_mb: int) -> QuotaNode:
        node.allocated_mb += delta_mb
        _check_row(node)
        self._tx.staged[node.id] = node
        return node

    async def add_used(self, node: QuotaNode, delta_mb: int) -> QuotaNode:
        node.used_mb += delta_mb
        _check_row(node)
        self._tx.staged[node.id] = node
        return node

    async def mark_deleted(self, node: QuotaNode) -> QuotaNode:
        node.status = STATUS_DELETED
        node.deleted_at = datetime.now(UTC)
        self._tx.staged[node.id] = node
        return node


class FakeUsageRecordRepository:
    def __init__(self, session: FakeSession) -> None:
        self.session = session

    async def append(self, quota_id, user_id, resource_id, usage_mb, operation, reason):
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
        self.session.tx.usage.append(record)
        return record


class FakeAuditEntryRepository:
    def __init__(self, session: FakeSession) -> None:
        self.session = session

    async def append(self, quota_id, action, actor_id, details, target_actor_id=None):
        entry = AuditEntry(
            id=new_id("audit"),
            quota_id=quota_id,
            action=action,
            actor_id=actor_id,
            target_actor_id=target_actor_id,
            details=details,
            created_at=datetime.now(UTC),
        )
        self.session.tx.audit.append(entry)
        return entry


class FakeOracle(AuthorizationOracle):
    """Grants everything unless told otherwise; records every call."""

    def __init__(self) -> None:
        self.denied: set[tuple[str, str, str]] = set()
        self.fail_register = False
        self.fail_grant_for: set[str] = set()
        self.checks: list[tuple[str, str, tuple[str, ...]]] = []
        self.registered: list[str] = []
        self.grants: list[tuple[str, str, tuple[str, ...]]] = []

    def deny(self, user_id: str, resource_id: str, capability: str) -> None:
        self.denied.add((user_id, resource_id, capability))

    async def check_capability(self, actor, resource_id, capabilities):
        self.checks.append((actor.user_id, resource_id, tuple(capabilities)))
        return not any((actor.user_id, resource_id, cap) in self.denied for cap in capabilities)

    async def register_resource(self, actor, resource_id, resource_type, display_name, description):
        if self.fail_register:
            raise UpstreamError("auth service unavailable")
        self.registered.append(resource_id)

    async def grant_capability(self, acting_admin, target_user_id, resource_id, capabilities):
        if target_user_id in self.fail_grant_for:
            raise UpstreamError(f"grant to {target_user_id} failed")
        self.grants.append((target_user_id, resource_id, tuple(capabilities)))


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def actor() -> Actor:
    return Actor(user_id="user-1", organization_id="org-1", team_ids=("T1",), credential="blob")


@pytest.fixture
def make_service(ledger, oracle):
    """Return a factory producing a QuotaService on its own session (one per caller)."""

    def _make() -> QuotaService:
        session = FakeSession(ledger)
        svc = QuotaService(session, oracle)
        svc.repo = FakeQuotaNodeRepository(session)
        svc.usage_repo = FakeUsageRecordRepository(session)
        svc.audit_repo = FakeAuditEntryRepository(session)
        return svc

    return _make
