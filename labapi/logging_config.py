import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path

import yaml

from .config import LOG_FORMAT, LOG_LEVEL
from .context import get_request_id

_RESERVED = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'message', 'asctime',
}


class JsonFormatter(logging.Formatter):
    """JSON formatter stamping each record with the active request id"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging():
    """Setup logging configuration from YAML file or environment"""

    log_format = LOG_FORMAT
    log_level = LOG_LEVEL.upper()

    config = None
    if Path("LOGGING.yaml").exists():
        try:
            with open("LOGGING.yaml", 'r') as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger(__name__).warning("Could not load LOGGING.yaml: %s", e)

    if not config:
        config = {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonFormatter},
                "text": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S"
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "text" if log_format == "text" else "json",
                    "stream": "ext://sys.stdout"
                }
            },
            "loggers": {
                "labapi": {"level": log_level, "handlers": ["console"], "propagate": False},
                "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
                "uvicorn.access": {"level": log_level, "handlers": ["console"], "propagate": False},
            },
            "root": {"level": log_level, "handlers": ["console"]}
        }

    logging.config.dictConfig(config)
    return config
