import json
import logging
import os
import sys

_TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
_FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON line (ts, level, logger, msg).

    A traceback, if any, goes into an extra "exc" key.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(debug_format: str, fmt: str) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt=_DATE_FORMAT)
    return logging.Formatter(fmt, datefmt=_DATE_FORMAT)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Install root handlers for a CLI run or a background sync service.

    Level resolution: ``debug`` forces DEBUG, then ``LOG_LEVEL``, then
    ``level`` (from the YAML ``logging`` section), then WARNING for the
    service and INFO for the CLI.

    Args:
        mode: "service" writes to a log file only; "cli" writes to stderr
            and, with ``log_file``, to that file as well.
        debug: Force DEBUG regardless of LOG_LEVEL.
        log_file: Log file path; in service mode it beats LOG_FILE.
        debug_format: "text" or "json".
        level: Configured level name, case-insensitive.

    Environment variables:
        LOG_LEVEL: Level name overriding the configured one.
        LOG_FILE: Service log path (default /tmp/groupshare-sync.log).
    """
    default_level = "WARNING" if mode == "service" else "INFO"
    env_level = (os.getenv("LOG_LEVEL") or level or default_level).upper()

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "service":
        final_log_file = log_file or os.getenv(
            "LOG_FILE", "/tmp/groupshare-sync.log"
        )
        file_handler = logging.FileHandler(final_log_file, mode="a")
        file_handler.setFormatter(_formatter(debug_format, _TEXT_FORMAT))
        handlers.append(file_handler)
    else:
        # CLI output goes to stdout; logs stay on stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(_formatter(debug_format, _TEXT_FORMAT))
        handlers.append(stderr_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(_formatter(debug_format, _FILE_FORMAT))
            handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Silence noisy libraries unless DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("asyncio").setLevel(logging.WARNING)
