"""
errors.py
API error type raised by services and rendered by the exception handlers in main.py
"""

from typing import Any, Dict, Optional


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, code: str = "INTERNAL_ERROR",
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": {"code": self.code, "message": self.message},
        }
        if self.details:
            body["details"] = self.details
        return body
