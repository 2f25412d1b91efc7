# ==== OWNER CONTEXT MIDDLEWARE ==== #

"""
Owner context middleware for per-account isolation.

Every discount, invoice and rule belongs to an owner (the CRM account).
The owner id travels in a request header, is validated here, and is
injected into the request scope for the route handlers.
"""

import json

from fastapi import Request
from starlette.types import ASGIApp, Scope, Receive, Send

from discount_engine.business.errors import ValidationError


# ==== UTILITY FUNCTIONS ==== #

def get_owner_id(request: Request) -> str:
    """
    Extract owner ID from request scope.

    Raises:
        ValidationError: the middleware did not run or no owner was supplied
    """
    owner_id = request.scope.get("owner_id")
    if not owner_id:
        raise ValidationError("Missing owner context")
    return owner_id


def is_valid_owner_id(owner_id: str) -> bool:
    """Alphanumerics, hyphens and underscores, at most 64 characters."""
    if not owner_id or len(owner_id) > 64:
        return False
    return all(c.isalnum() or c in "-_" for c in owner_id)


# ==== OWNER CONTEXT MIDDLEWARE CLASS ==== #

class OwnerContextMiddleware:
    """Extracts and validates the owner header outside exempt paths."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Owner-Id"):
        self.app = app
        self.header_name = header_name
        self._header_key = header_name.lower().encode()

        # --► PATHS EXEMPT FROM OWNER VALIDATION
        self.exempt_paths = {
            "/healthz",
            "/readyz",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # ⚠️ Always allow OPTIONS requests (CORS preflight)
        if scope["method"] == "OPTIONS" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers = dict(scope["headers"])
        raw_owner = headers.get(self._header_key)

        if not raw_owner:
            await self._send_error_response(scope, send, f"Missing {self.header_name} header")
            return

        owner_id = raw_owner.decode()
        if not is_valid_owner_id(owner_id):
            await self._send_error_response(scope, send, f"Invalid {self.header_name} format")
            return

        scope["owner_id"] = owner_id
        await self.app(scope, receive, send)

    async def _send_error_response(self, scope: Scope, send: Send, message: str) -> None:
        """Send a 400 directly through ASGI."""
        # request.state lives in scope["state"], set by the correlation middleware
        state = scope.get("state") or {}
        body = json.dumps({
            "success": False,
            "error": message,
            "code": ValidationError.code,
            "correlation_id": state.get("correlation_id", "unknown"),
        })
        await send({
            "type": "http.response.start",
            "status": 400,
            "headers": [
                [b"content-type", b"application/json"],
            ],
        })
        await send({
            "type": "http.response.body",
            "body": body.encode(),
        })
