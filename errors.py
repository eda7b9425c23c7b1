"""
Error types raised by the store services.

Each carries the HTTP status it maps to; main.py turns them into
{"message": ...} JSON bodies.
"""
from typing import Any, Dict


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra


class ValidationFailed(StoreError):
    status_code = 400


class Unauthorized(StoreError):
    status_code = 401


class Forbidden(StoreError):
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class EmailDeliveryError(StoreError):
    status_code = 500


class DatabaseUnavailable(StoreError):
    status_code = 500
