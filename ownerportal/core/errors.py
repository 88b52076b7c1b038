from __future__ import annotations


class OwnerPortalError(Exception):
    """Base error for the owner portal.

    Subclasses carry the HTTP status and the short ``error`` label rendered by
    the API layer; ``detail`` is the optional human-readable explanation.
    """

    status_code = 500
    error = "Admin portal failure"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.error)
        self.detail = detail


class UnauthorizedError(OwnerPortalError):
    """Missing or invalid caller token."""

    status_code = 401
    error = "Unauthorized"


class ForbiddenError(OwnerPortalError):
    """Authenticated caller is not an owner."""

    status_code = 403
    error = "Forbidden"


class InvalidRequestError(OwnerPortalError):
    """Malformed id, unknown action or out-of-enum value."""

    status_code = 400
    error = "Invalid request"


class OwnerProtectedError(InvalidRequestError):
    """Mutation would demote, suspend, block or AI-disable an owner account."""

    error = "Owner account is protected"


class NotFoundError(OwnerPortalError):
    """Target user absent from the store and the directory."""

    status_code = 404
    error = "Not found"


class MigrationMissingError(OwnerPortalError):
    """An expected table has not been provisioned yet."""

    status_code = 503
    error = "Migration missing"

    def __init__(self, relation: str) -> None:
        super().__init__(f"Table '{relation}' does not exist yet; apply the pending migrations.")
        self.relation = relation


class UpstreamError(OwnerPortalError):
    """Identity directory call failed, returned a non-success status or an unreadable body."""

    status_code = 502
    error = "Identity provider failure"


class IdentityConfigError(OwnerPortalError):
    """Identity directory connection settings are missing."""

    status_code = 500
    error = "Identity provider not configured"
