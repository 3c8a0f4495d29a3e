from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from contentpulse.config import AppSettings
from contentpulse.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "content_pulse"
LOG_FILE_NAME = "content-pulse.log"
CLI_LOG_FILE_NAME = "content-pulse-cli.log"
TELEMETRY_LOG_FILE_NAME = "content-pulse-telemetry.log"


def configure_application_logging(settings: AppSettings) -> Path:
    """Console on stdout at the configured level plus the JSON file log at DEBUG."""
    console_stream = sys.stdout
    console_handler = logging.StreamHandler(stream=console_stream)
    console_handler.setLevel(_resolve_log_level(settings.log_level))
    console_handler.setFormatter(
        _build_console_formatter(enable_colors=_stream_supports_color(console_stream))
    )
    return _configure_logging(
        settings,
        log_file_name=LOG_FILE_NAME,
        console_handler=console_handler,
    )


def configure_cli_logging(settings: AppSettings) -> Path:
    """File-only logging for operator commands; the terminal belongs to rich."""
    return _configure_logging(settings, log_file_name=CLI_LOG_FILE_NAME, console_handler=None)


def _configure_logging(
    settings: AppSettings,
    *,
    log_file_name: str,
    console_handler: logging.Handler | None,
) -> Path:
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_file_name

    _configure_structlog()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    _reset_handlers(logger)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(_build_file_formatter())

    if console_handler is not None:
        logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    telemetry_log_file = _configure_telemetry_logger(log_dir / TELEMETRY_LOG_FILE_NAME)

    logger.info(
        "logging configured console_level=%s file_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(console_handler.level) if console_handler is not None else "OFF",
        "DEBUG",
        log_file,
        telemetry_log_file,
    )
    return log_file


def _resolve_log_level(raw_level: str) -> int:
    resolved = getattr(logging, raw_level.strip().upper(), None)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _configure_telemetry_logger(log_file: Path) -> Path:
    # Telemetry stays out of the main log; it only goes to its own file.
    telemetry_logger = logging.getLogger(TELEMETRY_LOGGER_NAME)
    telemetry_logger.setLevel(logging.INFO)
    telemetry_logger.propagate = False
    _reset_handlers(telemetry_logger)

    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(_build_file_formatter())
    telemetry_logger.addHandler(handler)
    return log_file


def _build_console_formatter(*, enable_colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _fold_sync_context,
            structlog.dev.ConsoleRenderer(colors=enable_colors),
        ],
    )


def _build_file_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_pre_chain(),
        processors=[
            _add_record_metadata,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _shared_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _fold_sync_context(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    owner_id = event_dict.pop("sync_owner_id", None)
    platform = event_dict.pop("sync_platform", None)
    if owner_id is not None or platform is not None:
        event_dict["sync"] = f"{owner_id or '?'}/{platform or '?'}"
    return event_dict


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["pathname"] = record.pathname
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["thread_name"] = record.threadName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False
