from __future__ import annotations


class PgFleetError(Exception):
    """Base error for pgfleet."""


class NodeConnectionError(PgFleetError):
    """A managed Postgres node could not be reached or rejected authentication."""


class NodeAuthError(NodeConnectionError):
    """A managed Postgres node rejected the supplied credentials."""


class NodeCommandError(PgFleetError):
    """A control statement failed on a managed Postgres node."""


class FederationSyncError(PgFleetError):
    """Peer sync delivery failed."""
