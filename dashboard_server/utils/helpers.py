from __future__ import annotations

import os
from logging import Logger

from simple_logger.logger import get_logger

from dashboard_server.libs.config import Config


def get_logger_with_params(name: str = "", log_file_name: str | None = None) -> Logger:
    mask_sensitive_patterns: list[str] = [
        # Passwords and secrets
        "password",
        "secret",
        "webhook_secret",
        "webhook-secret",
        # Tokens and API keys
        "token",
        "apikey",
        "api_key",
        "pat",
        "AZURE_DEVOPS_PAT",
        # Authentication headers
        "authorization",
        "Authorization",
    ]

    _config = Config()

    log_level: str = _config.get_value(value="log-level", return_on_none="INFO")
    log_file: str | None = log_file_name or _config.get_value(value="log-file")
    mask_sensitive: bool = _config.get_value(value="mask-sensitive-data", return_on_none=True)

    if log_file and not log_file.startswith("/"):
        log_file_path = os.path.join(_config.data_dir, "logs")

        if not os.path.isdir(log_file_path):
            os.makedirs(log_file_path, exist_ok=True)

        log_file = os.path.join(log_file_path, log_file)

    # One logger (and one rotating handler) per log file, otherwise rotation breaks.
    logger_cache_key = os.path.basename(log_file) if log_file else (name or "console")

    return get_logger(
        name=logger_cache_key,
        filename=log_file,
        level=log_level,
        file_max_bytes=1024 * 1024 * 10,
        mask_sensitive=mask_sensitive,
        mask_sensitive_patterns=mask_sensitive_patterns,
        console=True,
    )


def _sanitize_log_value(value: str) -> str:
    """Sanitize value for safe inclusion in structured log messages.

    Prevents log injection by removing newlines and escaping brackets.

    Args:
        value: Raw value to sanitize

    Returns:
        Sanitized value safe for log formatting
    """
    sanitized = value.replace("\n", " ").replace("\r", " ")
    sanitized = sanitized.replace("[", "\\[").replace("]", "\\]")
    return sanitized


def prepare_log_prefix(event_type: str, event_id: str, work_item_id: int | str | None = None) -> str:
    """
    Prepare standardized log prefix for webhook processing.

    Args:
        event_type: Azure DevOps event type (e.g., 'workitem.updated')
        event_id: Event identifier (notification id or derived hash)
        work_item_id: Work item id if known

    Returns:
        Formatted log prefix string
    """
    components = [_sanitize_log_value(str(event_type)), _sanitize_log_value(str(event_id))]
    prefix = f"[{']['.join(components)}]"

    if work_item_id is not None:
        prefix += f"[WI {_sanitize_log_value(str(work_item_id))}]"

    return prefix + ":"


def format_task_fields(task_id: str | None = None, task_type: str | None = None, task_status: str | None = None) -> str:
    """Format task correlation fields for log messages.

    Args:
        task_id: Task identifier (e.g., "webhook_processing", "metrics_overview")
        task_type: Task type category (e.g., "event_dispatch", "cache_invalidation")
        task_status: Task status (e.g., "started", "completed", "failed")

    Returns:
        Formatted string with task fields in brackets, or empty string if no fields provided.
        Example: "[task_id=webhook_processing] [task_type=event_dispatch] [task_status=started]"
    """
    parts = []
    if task_id:
        parts.append(f"[task_id={_sanitize_log_value(task_id)}]")
    if task_type:
        parts.append(f"[task_type={_sanitize_log_value(task_type)}]")
    if task_status:
        parts.append(f"[task_status={_sanitize_log_value(task_status)}]")
    return " ".join(parts)
