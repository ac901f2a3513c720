# Overview: Domain error taxonomy shared by services and routes.

"""
Marketplace domain errors.

Every business-rule violation is raised as a MarketplaceError subclass before
any write happens. Routes turn them into {"kind", "message", "context"} JSON
bodies with the class's HTTP status. Anything else that escapes a service is
treated as Internal by the route layer.
"""

from __future__ import annotations

from flask import jsonify


class MarketplaceError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(MarketplaceError):
    """400-level input problem tied to a single field."""

    kind = "ValidationError"
    status_code = 400

    def __init__(self, message: str, field: str | None = None, **context):
        super().__init__(message, field=field, **context)
        self.field = field


class EmptyOrder(MarketplaceError):
    kind = "EmptyOrder"
    status_code = 400


class NotFound(MarketplaceError):
    kind = "NotFound"
    status_code = 404


class Forbidden(MarketplaceError):
    kind = "Forbidden"
    status_code = 403


class InvalidTransition(MarketplaceError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, message: str, from_status: str | None = None, to_status: str | None = None, **context):
        super().__init__(message, from_status=from_status, to_status=to_status, **context)
        self.from_status = from_status
        self.to_status = to_status


class InvalidReturnTransition(InvalidTransition):
    kind = "InvalidReturnTransition"


class InsufficientStock(MarketplaceError):
    kind = "InsufficientStock"
    status_code = 409


class CancellationWindowExpired(MarketplaceError):
    kind = "CancellationWindowExpired"
    status_code = 409


class InvoiceCancelled(MarketplaceError):
    kind = "InvoiceCancelled"
    status_code = 409


class AlreadyExists(MarketplaceError):
    kind = "AlreadyExists"
    status_code = 409


class Internal(MarketplaceError):
    kind = "Internal"
    status_code = 500


def error_response(exc: MarketplaceError):
    """(json body, status) pair for a route to return."""
    return jsonify(exc.to_dict()), exc.status_code


def internal_error_response():
    return error_response(Internal("Internal server error"))
