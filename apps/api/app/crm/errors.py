from __future__ import annotations

from typing import Any

from fastapi import status


class CRMError(Exception):
    """Base class for domain failures surfaced to API callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any = None) -> None:
        super().__init__(f"{entity} not found", details={"id": str(entity_id)} if entity_id is not None else None)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(CRMError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidArgumentError(CRMError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_argument"

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        self.fields = sorted(set(fields or []))
        super().__init__(message, details={"fields": self.fields} if self.fields else None)


class StaleDealError(ConflictError):
    """Raised when a deal's stored version token no longer matches the caller's."""

    code = "deal_modified"
    message_text = "Deal has been modified by another user. Please refresh and try again."

    def __init__(self, deal_id: Any) -> None:
        super().__init__(self.message_text, details={"deal_id": str(deal_id)})
        self.deal_id = deal_id


class PermissionDeniedError(CRMError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"

    def __init__(self, permission: str) -> None:
        super().__init__(f"Missing permission: {permission}", details={"permission": permission})
        self.permission = permission
