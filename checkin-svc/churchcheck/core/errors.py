"""Structured error kinds shared by every service.

Routers never translate these by hand; ``main.py`` installs one handler that
renders ``{"error": kind, "detail": ...}`` with the matching status code.
"""
from __future__ import annotations


class DomainError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class ValidationError(DomainError):
    kind = "validation_error"
    status_code = 422


class ConflictError(DomainError):
    kind = "conflict"
    status_code = 409


class AlreadyCheckedIn(ConflictError):
    kind = "already_checked_in"


class PickupCodeMismatch(ConflictError):
    kind = "pickup_code_mismatch"


class NoOpenSession(ConflictError):
    kind = "no_open_session"


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = 404


class UnknownPerson(NotFoundError):
    kind = "unknown_person"


class CapacityError(DomainError):
    kind = "capacity_exceeded"
    status_code = 409


class RoomCapacityExceeded(CapacityError):
    kind = "room_capacity_exceeded"


class AuthorizationError(DomainError):
    kind = "unauthorized"
    status_code = 401


Unauthorized = AuthorizationError


class ExhaustionError(DomainError):
    kind = "pin_space_exhausted"
    status_code = 507


class Forbidden(AuthorizationError):
    kind = "forbidden"
    status_code = 403


class RateLimited(DomainError):
    kind = "rate_limited"
    status_code = 429


class UpstreamError(DomainError):
    kind = "upstream_unavailable"
    status_code = 502
