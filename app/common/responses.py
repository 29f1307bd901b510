"""
Standard response envelope: {success, data?, message?, error?}
"""
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
    error: Optional[str] = None


def error_response(message: str, error: str, details: Optional[dict] = None) -> dict:
    body = {"success": False, "message": message, "error": error}
    if details:
        body["details"] = details
    return body
