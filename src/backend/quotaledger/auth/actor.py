"""Resolved actor identity.

Actor is a plain dataclass with no ORM or network dependency. Resolving the
opaque credential into an Actor happens before the engine is called;
``credential`` is only carried along so it can be forwarded to the
authorization oracle unchanged.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Actor:
    user_id: str
    organization_id: str
    team_ids: tuple[str, ...] = field(default_factory=tuple)
    credential: str | None = None
