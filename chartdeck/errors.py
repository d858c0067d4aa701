from __future__ import annotations

import uuid
from typing import Any


class ServiceError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        error_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())
        self.details = details or {}

    def to_error_item(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "error_id": self.error_id, **self.details}


def not_found(resource: str, resource_id: int | str) -> ServiceError:
    return ServiceError(
        status_code=404,
        code=f"{resource}_not_found",
        message=f"{resource.capitalize()} with ID {resource_id} not found",
    )
