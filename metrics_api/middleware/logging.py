import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..utils.logging import slogger, Timer

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs it on the way in and out."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Honour an id assigned upstream (API Gateway, load balancer)
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        slogger.set_request_id(request_id)
        try:
            self._log_request(request, request_id)

            with Timer() as timer:
                try:
                    response = await call_next(request)
                except Exception as e:
                    slogger.error(
                        "REQUEST_ERROR",
                        "Error processing request",
                        error=e,
                        data={
                            "path": request.url.path,
                            "method": request.method,
                            "elapsed_ms": timer.elapsed_ms
                        }
                    )
                    raise

            response.headers[REQUEST_ID_HEADER] = request_id
            slogger.info(
                "RESPONSE",
                f"Response for {request.method} {request.url.path}",
                data={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "elapsed_ms": timer.elapsed_ms
                }
            )
            return response
        finally:
            slogger.set_request_id(None)

    def _log_request(self, request: Request, request_id: str) -> None:
        client_host = request.client.host if request.client else None
        slogger.info(
            "REQUEST",
            f"Incoming {request.method} request to {request.url.path}",
            data={
                "method": request.method,
                "path": request.url.path,
                "query_params": dict(request.query_params),
                "client_ip": client_host,
                "user_agent": request.headers.get("user-agent"),
                "request_id": request_id
            }
        )
