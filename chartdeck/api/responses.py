from typing import Any, Optional


def envelope(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def error_envelope(message: str, errors: list[dict[str, Any]]) -> dict[str, Any]:
    return {"success": False, "message": message, "errors": errors}
