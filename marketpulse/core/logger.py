"""
Structured Logging - structlog over stdlib logging.

Console output for development, JSON for production, rotating files for
both. Secrets (API keys for CoinGecko / CryptoPanic) are masked before
anything is rendered, including credentials that leak into httpx error
strings through request URLs.

Every line logged inside a refresh cycle carries the cadence that produced
it (``cadence=fast`` / ``cadence=medium``) via ``cadence_context``.
"""

from __future__ import annotations

import logging
import re
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, ContextManager, Dict

import structlog


# ---------------------------------------------------------------------------
# Secret masking
# ---------------------------------------------------------------------------

_SENSITIVE_KEYS = frozenset({"api_key", "api_secret", "auth_token", "password", "token", "secret"})

# CryptoPanic authenticates with ?auth_token=, CoinGecko with x_cg_demo_api_key.
_QUERY_SECRET_RE = re.compile(r"((?:auth_token|x_cg_demo_api_key|apikey)=)([^&\s'\"]+)", re.IGNORECASE)

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


def _redact(value: Any) -> str:
    text = str(value)
    return text[:4] + "****" + text[-4:] if len(text) > 8 else "****"


def _scrub_value(v: Any) -> Any:
    if isinstance(v, str):
        return _QUERY_SECRET_RE.sub(r"\1<redacted>", v)
    if isinstance(v, dict):
        return {k: _scrub_value(val) for k, val in v.items()}
    if isinstance(v, (list, tuple)):
        scrubbed = [_scrub_value(x) for x in v]
        return tuple(scrubbed) if isinstance(v, tuple) else scrubbed
    return v


def _mask_sensitive(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-looking keys and scrub query-string secrets elsewhere."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(s in lowered for s in _SENSITIVE_KEYS):
            event_dict[key] = _redact(value)
        else:
            event_dict[key] = _scrub_value(value)
    return event_dict


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

class PerformanceTimer:
    """Times one gateway call (or any block) and logs how long it took.

    Completion is logged at debug, or at warning when it took longer than
    ``slow_ms``. Failures are logged at debug only; the caller decides how
    loudly a failed fetch should be reported.
    """

    def __init__(self, logger: Any, operation: str, slow_ms: float = 1000.0, **context):
        self.logger = logger
        self.operation = operation
        self.slow_ms = slow_ms
        self.context = context
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        if exc_type:
            self.logger.debug(
                f"{self.operation} failed",
                duration_ms=self.elapsed_ms,
                error=repr(exc_val),
                **self.context
            )
        elif self.elapsed_ms > self.slow_ms:
            self.logger.warning(
                f"{self.operation} slow",
                duration_ms=self.elapsed_ms,
                slow_ms=self.slow_ms,
                **self.context
            )
        else:
            self.logger.debug(
                f"{self.operation} completed",
                duration_ms=self.elapsed_ms,
                **self.context
            )
        return False


def log_performance(logger: Any, operation: str, slow_ms: float = 1000.0, **context) -> PerformanceTimer:
    """Create a timing context manager; see ``PerformanceTimer``."""
    return PerformanceTimer(logger, operation, slow_ms=slow_ms, **context)


def cadence_context(cadence: str, **context: Any) -> ContextManager[Any]:
    """Bind ``cadence`` (and e.g. ``pair``) to every log line in the block."""
    return structlog.contextvars.bound_contextvars(cadence=cadence, **context)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    json_output: bool = False,
    app_name: str = "marketpulse",
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Writes ``<app_name>.log`` (everything at ``log_level``),
    ``<app_name>-errors.log`` (ERROR and above) and the console.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    main_handler = RotatingFileHandler(
        log_path / f"{app_name}.log", encoding="utf-8",
        maxBytes=20 * 1024 * 1024, backupCount=5,
    )
    main_handler.setLevel(level)

    error_handler = RotatingFileHandler(
        log_path / f"{app_name}-errors.log", encoding="utf-8",
        maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    error_handler.setLevel(logging.ERROR)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for h in root_logger.handlers[:]:
        h.close()
        root_logger.removeHandler(h)
    for h in (main_handler, error_handler, console_handler):
        root_logger.addHandler(h)

    # httpx logs every request URL at INFO; the fast cadence would flood the log.
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _mask_sensitive,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True, pad_event=40)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    for handler in root_logger.handlers:
        handler.setFormatter(formatter)


def get_logger(name: str = "marketpulse") -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return structlog.get_logger(name)
