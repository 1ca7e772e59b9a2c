import os

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class AuthMiddleware(BaseHTTPMiddleware):
    """Checks X-API-Key against KUBEBOOT_API_KEY; with no key configured every request is refused."""

    def __init__(self, app, token: str = None):
        super().__init__(app)
        self.token = token

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/docs") or request.url.path.startswith("/openapi.json"):
            return await call_next(request)

        token = self.token or os.getenv("KUBEBOOT_API_KEY")
        if not token:
            return JSONResponse(status_code=503, content={"detail": "KUBEBOOT_API_KEY is not set"})

        auth_header = request.headers.get("X-API-Key")
        if auth_header != token:
            return JSONResponse(status_code=403, content={"detail": "Unauthorized"})
        return await call_next(request)
