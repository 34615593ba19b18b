from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from pocket_budget.core.config import settings

# Fields bound here are attached to every event logged in the same context.
_CONTEXT: dict[str, contextvars.ContextVar[str | None]] = {
    "request_id": contextvars.ContextVar("request_id", default=None),
    "ingestion_session_id": contextvars.ContextVar("ingestion_session_id", default=None),
}

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None) or record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update({k: v for k, v in fields.items() if v is not None})
        if record.exc_info:
            exc_type = record.exc_info[0]
            payload["exc_type"] = exc_type.__name__ if exc_type else None
            payload["exc_info"] = self.formatException(record.exc_info)
        # Receipt text is often CJK; keep it readable in the log stream.
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging() -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("pocket_budget")
    root.setLevel(level)
    root.handlers = [handler]
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def set_request_context(*, request_id: str | None) -> contextvars.Token:
    return _CONTEXT["request_id"].set(request_id)


def reset_request_context(token: contextvars.Token) -> None:
    _CONTEXT["request_id"].reset(token)


def set_ingestion_context(session_id: str | None) -> contextvars.Token:
    return _CONTEXT["ingestion_session_id"].set(session_id)


def reset_ingestion_context(token: contextvars.Token) -> None:
    _CONTEXT["ingestion_session_id"].reset(token)


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    payload = {name: var.get() for name, var in _CONTEXT.items() if var.get()}
    payload.update({k: v for k, v in fields.items() if v is not None})
    return payload


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _merge_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _merge_fields(fields)})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag every log line of a request with its id and log the request outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = set_request_context(request_id=request_id)
        start = time.monotonic()
        logger = get_logger(__name__)
        try:
            response = await call_next(request)
        except Exception:
            log_exception(
                logger,
                "http.request.error",
                method=request.method,
                path=request.url.path,
                duration_ms=monotonic_ms(start),
            )
            raise
        else:
            response.headers["x-request-id"] = request_id
            log_event(
                logger,
                "http.request.finish",
                level=logging.WARNING if response.status_code >= 500 else logging.INFO,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=monotonic_ms(start),
            )
            return response
        finally:
            reset_request_context(token)


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
