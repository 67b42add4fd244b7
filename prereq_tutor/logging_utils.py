import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from prereq_tutor.config import Config


def _log_dir() -> Path | None:
    return Path(Config.LOGGING.DIR) if Config.LOGGING.DIR else None


def _today_log_file(log_dir: Path) -> Path:
    """Return path to today's log file (e.g. app-2026-02-16.log)."""
    return log_dir / f"app-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.log"


def _cleanup_old_logs(log_dir: Path) -> None:
    """Delete log files older than KEEP_DAYS."""
    cutoff = datetime.now(timezone.utc).timestamp() - (
        Config.LOGGING.KEEP_DAYS * 86400
    )
    for f in log_dir.glob("app-*.log"):
        try:
            if f.stat().st_mtime < cutoff:
                f.unlink()
        except OSError:
            continue


class StructuredLogger:
    """
    Structured logger that outputs logs in uvicorn-style format.

    Logs to:
    - Console (stdout), always
    - File (date-based, e.g. app-2026-02-16.log) when LOG_DIR is configured
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.logger = logging.getLogger(f"prereq_tutor.{service_name}")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # Remove existing handlers to avoid duplicates
        self.logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger.addHandler(console_handler)

        log_dir = _log_dir()
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(
                _today_log_file(log_dir), mode="a", encoding="utf-8"
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(file_handler)
            _cleanup_old_logs(log_dir)

    def log(
        self,
        level: str,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        """Log a structured message in uvicorn-style format."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level_padded = level.ljust(8)

        req_id = request_id or "-"
        log_parts = [
            f"{timestamp} | {level_padded} | {self.service_name}:{req_id} - {message}"
        ]

        if context:
            context_str = " ".join(f"{k}={v}" for k, v in context.items())
            log_parts.append(f" - {context_str}")

        log_line = "".join(log_parts)
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(log_line)

    def info(
        self,
        message: str,
        context: Optional[dict] = None,
        request_id: Optional[str] = None,
    ):
        """Log INFO level message"""
        self.log("INFO", message, context, request_id)

    def debug(
        self,
        message: str,
        context: Optional[dict] = None,
        request_id: Optional[str] = None,
    ):
        """Log DEBUG level message"""
        self.log("DEBUG", message, context, request_id)

    def warning(
        self,
        message: str,
        context: Optional[dict] = None,
        request_id: Optional[str] = None,
    ):
        """Log WARNING level message"""
        self.log("WARNING", message, context, request_id)

    def error(
        self,
        message: str,
        context: Optional[dict] = None,
        request_id: Optional[str] = None,
    ):
        """Log ERROR level message"""
        self.log("ERROR", message, context, request_id)


def generate_request_id() -> str:
    """Generate a unique request ID for tracing a learner action"""
    return f"req-{uuid.uuid4().hex[:12]}"


def get_logs_by_request_id(request_id: str, max_lines: int = 1000) -> list[str]:
    """Search log files for entries matching a request ID."""
    log_dir = _log_dir()
    if log_dir is None or not log_dir.exists():
        return []

    matching_logs: list[str] = []
    log_files = sorted(log_dir.glob("app-*.log"), reverse=True)

    for log_file in log_files:
        try:
            with open(log_file, "r", encoding="utf-8") as f:
                for line in f:
                    if request_id in line:
                        matching_logs.append(line.strip())
                        if len(matching_logs) >= max_lines:
                            return matching_logs
        except OSError:
            continue

    return matching_logs
