"""接口令牌鉴权中间件。"""

from __future__ import annotations

import hmac

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


def unauthorized_response(message: str) -> Response:
    """返回统一的 401 响应。"""

    return JSONResponse({"detail": message}, status_code=401)


def extract_token(request: Request) -> str:
    """优先读取 Bearer 令牌，其次读取 X-API-Token 头。"""

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.headers.get("X-API-Token", "").strip()


class ApiTokenMiddleware(BaseHTTPMiddleware):
    """/api 路径下的共享令牌校验。"""

    def __init__(self, app, token: str, exempt_paths: set[str] | None = None):
        super().__init__(app)
        self.token = token
        self.exempt_paths = exempt_paths or set()

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        if path in self.exempt_paths or not path.startswith("/api"):
            return await call_next(request)

        token = extract_token(request)
        if not token:
            return unauthorized_response("缺少接口令牌")
        if not hmac.compare_digest(token, self.token):
            return unauthorized_response("接口令牌无效")

        request.state.acting_user_id = request.headers.get("X-User-Id") or None
        return await call_next(request)
