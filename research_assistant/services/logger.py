"""Centralized logging service for orchestration tracing."""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from research_assistant.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(exist_ok=True)

APP_LOG_LEVEL = getattr(logging, settings.app_log_level.upper(), logging.INFO)
NOISY_LOG_LEVEL = getattr(logging, settings.noisy_log_level.upper(), logging.WARNING)

logging.basicConfig(
    level=APP_LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(LOG_DIR / "research.log"),
        logging.StreamHandler(),
    ],
)

# Reduce noise from framework/network libraries unless explicitly overridden.
for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "hpack",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(NOISY_LOG_LEVEL)

logger = logging.getLogger("research_assistant")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_provider_call(
    provider: str,
    operation: str,
    duration_ms: int = 0,
    status: str = "success",
    attempt: int | None = None,
    error: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """Log one outbound provider request."""
    call_data = {
        "timestamp": _now(),
        "provider": provider,
        "operation": operation,
        "duration_ms": duration_ms,
        "status": status,
        "attempt": attempt,
        "error": error,
        **kwargs,
    }
    level = logging.INFO if status == "success" else logging.WARNING
    logger.log(level, f"PROVIDER_CALL: {json.dumps(call_data, default=str)}")


def log_run_step(
    session_id: str,
    step_type: str,
    status: str,
    provider: Optional[str] = None,
    request_id: Optional[str] = None,
    data: Optional[dict] = None,
) -> None:
    """Log a scheduler or pipeline step for one research session."""
    step_data = {
        "timestamp": _now(),
        "session_id": session_id,
        "provider": provider,
        "request_id": request_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    level = logging.ERROR if status in ("failed", "error") else logging.INFO
    logger.log(level, f"RUN_STEP: {json.dumps(step_data, default=str)}")


def log_event(
    event_type: str,
    message: str,
    level: int = logging.INFO,
    **kwargs: Any,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.log(level, f"EVENT: {json.dumps(event_data, default=str)}")
