from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    """Base class for errors surfaced through the uniform response envelope."""

    status_code: int = 500
    default_message: str = "Gateway error"

    def __init__(self, message: Optional[str] = None, *, error: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.error = error
        super().__init__(self.message)

    def to_payload(self, *, include_error: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "message": self.message}
        if include_error and self.error:
            payload["error"] = self.error
        return payload


class InvalidArgument(GatewayError):
    status_code = 400
    default_message = "Invalid argument"


class InvalidPhoneNumber(InvalidArgument):
    default_message = "Invalid phone number format"

    def __init__(self, phone_number: str = "", message: Optional[str] = None) -> None:
        super().__init__(message)
        self.phone_number = phone_number


class Unauthorized(GatewayError):
    status_code = 401
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, *, status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionNotFound(GatewayError):
    status_code = 404

    def __init__(self, phone_id: str) -> None:
        super().__init__(f"WhatsApp client for {phone_id} not found. Please connect first.")
        self.phone_id = phone_id


class DispatchFailed(GatewayError):
    status_code = 500
    default_message = "Error dispatching request"


class InternalError(GatewayError):
    status_code = 500
    default_message = "Something went wrong!"


__all__ = [
    "GatewayError",
    "InvalidArgument",
    "InvalidPhoneNumber",
    "Unauthorized",
    "SessionNotFound",
    "DispatchFailed",
    "InternalError",
]
