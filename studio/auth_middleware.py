"""
Shared-secret authentication middleware for the studio API.

All /pipelines/* endpoints require a valid X-Studio-Secret header matching
STUDIO_SHARED_SECRET. The web app attaches this header when forwarding
editor requests to the service.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class StudioAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /pipelines/* endpoints."""

    PROTECTED_PREFIX = "/pipelines"

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Health, metrics and docs stay public
        if not path.startswith(self.PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "STUDIO_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Studio-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing studio secret"})

        return await call_next(request)
