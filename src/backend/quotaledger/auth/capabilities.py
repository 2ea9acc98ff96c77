"""Capability names understood by the authorization oracle for quota nodes."""

READ = "read"
ADMIN = "admin"
OWNER = "owner"

GRANTABLE_CAPABILITIES: frozenset[str] = frozenset({READ, ADMIN, OWNER})

# Resource type under which quota nodes are registered with the oracle.
QUOTA_RESOURCE_TYPE = "quota"
