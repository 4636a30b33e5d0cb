import hashlib
import json
import logging
import os
import time
import traceback
import uuid
from typing import Any, Dict

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from billsledger.errors import LedgerError


def mask_amount(amount) -> str:
    """Hash amount for logs, không ghi số tiền thật để bảo mật."""
    secret = os.getenv("LOG_AMOUNT_SECRET", "bills-ledger-default")
    h = hashlib.sha256(f"{amount}:{secret}".encode()).hexdigest()
    return f"amt:{h[:12]}"


def _ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


def _dumps(payload: Dict[str, Any]) -> str:
    # Decimal / datetime / enum đều về string
    return json.dumps(payload, ensure_ascii=False, default=str)


def get_json_logger(service_name: str) -> logging.Logger:
    """
    Return a logger that prints plain JSON to stdout.

    - Không đụng tới cấu hình uvicorn mặc định.
    - Mỗi log line là một JSON object, dễ parse bằng Loki / Elasticsearch.
    """
    logger = logging.getLogger(service_name)
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """
    Log một sự kiện business ở dạng JSON.

    Ví dụ:
        log_event(logger, "bill_paid", bill_id="...", user_id="...")
    """
    payload: Dict[str, Any] = {"ts": _ts(), "event": event, **fields}
    logger.info(_dumps(payload))


def log_error_event(logger: logging.Logger, event: str, exc: Exception | None = None, **fields: Any) -> None:
    """Log error event at ERROR level with optional traceback."""
    payload: Dict[str, Any] = {"ts": _ts(), "event": event, "level": "error", **fields}
    if exc is not None:
        payload["error"] = str(exc)
        payload["error_type"] = type(exc).__name__
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        payload["traceback"] = "".join(tb).replace("\n", "\\n")
    logger.error(_dumps(payload))


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Middleware ghi access log dạng JSON cho từng request."""

    def __init__(self, app, logger: logging.Logger, service_name: str) -> None:
        super().__init__(app)
        self.logger = logger
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next):
        # Bỏ qua health/metrics để log gọn hơn
        path = request.url.path
        if path in ("/health", "/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        payload = {
            "ts": _ts(),
            "event": "http_request",
            "service": self.service_name,
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": request.client.host if request.client else None,
            "request_id": request_id,
        }
        self.logger.info(_dumps(payload))
        response.headers.setdefault("X-Request-Id", request_id)
        return response


def setup_exception_logging(app, logger: logging.Logger, service_name: str):
    """
    Gắn exception handlers vào FastAPI app.

    LedgerError → status/code của nó. Mọi unhandled exception khác được log
    thành 1 JSON line duy nhất và trả 500.
    """

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            log_error_event(logger, "request_failed", exc=exc, service=service_name, method=request.method, path=request.url.path)
            detail = "Internal server error"
        else:
            log_event(logger, "request_rejected", service=service_name, method=request.method, path=request.url.path, reason=exc.code, detail=exc.detail)
            detail = exc.detail
        return JSONResponse(status_code=exc.status_code, content={"detail": detail, "error": exc.code})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        log_error_event(logger, "unhandled_exception", exc=exc, service=service_name, method=request.method, path=request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": "internal_failure"})
