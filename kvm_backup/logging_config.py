"""
Logging configuration for KVM Backup tools
"""
import logging
import json
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    RESERVED = {'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
                'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
                'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
                'thread', 'threadName', 'processName', 'process', 'message',
                'taskName', 'asctime'}

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Add any extra fields
        for key, value in record.__dict__.items():
            if key not in self.RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain text formatter that appends structured fields as key=value pairs"""

    def format(self, record):
        line = super().format(record)
        extras = [f"{key}={value}" for key, value in record.__dict__.items()
                  if key not in JSONFormatter.RESERVED]
        if extras:
            line = f"{line} [{' '.join(extras)}]"
        return line


def daily_log_file(log_dir: str, log_name: str, day: Optional[datetime] = None) -> Path:
    """Path of the log file for one day: <log_dir>/<log_name>.<YYYY-MM-DD>.log"""
    day = day or datetime.now()
    return Path(log_dir) / f"{log_name}.{day.strftime('%Y-%m-%d')}.log"


def setup_logging(log_level: str = "INFO",
                  log_format: str = "text",
                  log_dir: str = "./logs",
                  log_name: str = "qemu-backup") -> Path:
    """Setup console logging plus a per-day log file opened for append"""

    # Create log directory
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = KeyValueFormatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # One file per day, appended across runs
    log_file = daily_log_file(log_dir, log_name)
    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Set levels for specific loggers
    logging.getLogger('libvirt').setLevel(logging.WARNING)

    return log_file


def get_logger(name: str):
    """Get a logger instance with enhanced functionality"""

    class EnhancedLogger:
        def __init__(self, logger):
            self._logger = logger

        def _log_with_kwargs(self, level, msg, *args, **kwargs):
            """Log with keyword arguments support"""
            extra = kwargs.pop('extra', {})
            # Move all remaining kwargs to extra
            for key, value in kwargs.items():
                extra[key] = value

            if extra:
                self._logger.log(level, msg, *args, extra=extra)
            else:
                self._logger.log(level, msg, *args)

        def info(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.INFO, msg, *args, **kwargs)

        def error(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.ERROR, msg, *args, **kwargs)

        def warning(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.WARNING, msg, *args, **kwargs)

        def debug(self, msg, *args, **kwargs):
            self._log_with_kwargs(logging.DEBUG, msg, *args, **kwargs)

    return EnhancedLogger(logging.getLogger(name))


def format_duration(seconds: float) -> str:
    """Render seconds as <h>h:<m>m:<s>s"""
    secs = int(round(seconds))
    return f"{secs // 3600}h:{secs % 3600 // 60}m:{secs % 60}s"


# Context manager for operation logging
class LogOperation:
    """Context manager for logging operations with timing"""

    def __init__(self, logger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = None
        self.duration_seconds = 0.0

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.info(f"Starting {self.operation}", extra={
            'operation': self.operation,
            'phase': 'start',
            **self.context
        })
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_seconds = (datetime.now() - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(f"Completed {self.operation} in {format_duration(self.duration_seconds)}", extra={
                'operation': self.operation,
                'phase': 'complete',
                'duration_seconds': self.duration_seconds,
                **self.context
            })
        else:
            self.logger.error(f"Failed {self.operation}", extra={
                'operation': self.operation,
                'phase': 'failed',
                'duration_seconds': self.duration_seconds,
                'error': str(exc_val),
                **self.context
            })
