"""Error taxonomy — every failure the gateway reports to a client.

Each error knows its HTTP status and the ``error.type`` string used in the
wire body, so route handlers and the SSE stream render them the same way.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return error_body(self.error_type, self.message)


class ValidationError(GatewayError):
    """Malformed or structurally invalid request. Raised before the engine runs."""

    status_code = 400
    error_type = "invalid_request_error"


class EngineProtocolError(GatewayError):
    """The engine stream ended without a result, or yielded something unrecognized."""


class EngineRuntimeError(GatewayError):
    """The engine raised while executing."""


def error_body(error_type: str, message: str) -> dict:
    """Wire shape shared by JSON error responses and the SSE ``error`` event."""
    return {"type": "error", "error": {"type": error_type, "message": message}}
