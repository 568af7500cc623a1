"""Logging setup: readable console output plus JSON log files carrying job context."""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

# Fields a job-scoped logger attaches to each record
JOB_CONTEXT_FIELDS = ("job_id", "kind")

# Libraries that log every request or tick at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "asyncio")


class JobJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for log files; job records carry job_id and kind."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.utcfromtimestamp(record.created).isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.module}:{record.lineno}"
        for field in JOB_CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
        if record.exc_info and 'exc_info' not in log_record:
            log_record['exc_info'] = self.formatException(record.exc_info)


class ConsoleFormatter(logging.Formatter):
    """Console formatter that tags job records with ``[kind #id]``."""

    def format(self, record):
        job_id = getattr(record, "job_id", None)
        record.job_tag = f" [{getattr(record, 'kind', 'job')} #{job_id}]" if job_id else ""
        return super().format(record)


def setup_logging(base_dir: str | Path | None = None, level: str | None = None) -> logging.Logger:
    """
    Install the process-wide log handlers.

    Safe to call more than once: existing root handlers are replaced.

    Args:
        base_dir: Directory holding the logs/ folder (defaults to the working directory)
        level: Root log level (defaults to settings.log_level)

    Returns:
        The configured root logger
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.log_level).upper())
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(
        ConsoleFormatter("%(asctime)s %(levelname)-7s %(name)s%(job_tag)s: %(message)s")
    )
    root_logger.addHandler(console)

    json_formatter = JobJsonFormatter("%(timestamp)s %(level)s %(logger)s %(message)s")
    for filename, file_level in (("app.log", logging.DEBUG), ("error.log", logging.ERROR)):
        handler = RotatingFileHandler(
            logs_dir / filename, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        handler.setLevel(file_level)
        handler.setFormatter(json_formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class JobLoggerAdapter(logging.LoggerAdapter):
    """Adds the adapter's job context to each record, keeping any explicit ``extra``."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> JobLoggerAdapter:
    """
    Get a logger bound to job context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. job_id='42', kind='check-price'

    Returns:
        JobLoggerAdapter with context
    """
    return JobLoggerAdapter(logging.getLogger(name), context)
