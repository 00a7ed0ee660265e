"""
qchat :: Structured Logging

Terminal output for interactive chat, JSON lines for log collection.

Records may carry structured fields, passed as extra={"fields": {...}}:
  - HumanFormatter appends them as key=value after the message
  - JSONFormatter merges them into the JSON object

Generation sessions log through SessionLogger: every record is tagged
with the session id, and the session summary (stop reason, token counts,
tokens/s) is reported as fields rather than baked into the message.

INL - 2025
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional

# Chatty during downloads and model loading
NOISY_LOGGERS = ("huggingface_hub", "urllib3", "filelock")


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    session_id = getattr(record, "session_id", None)
    if session_id is not None:
        fields["session_id"] = session_id
    fields.update(getattr(record, "fields", None) or {})
    return fields


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    text = str(value)
    return f'"{text}"' if " " in text else text


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:00:01 [   INFO] message key=value ...`, level coloured on a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:>7}]"
        if self.color and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        parts = [self.formatTime(record, "%H:%M:%S"), level, record.getMessage()]
        fields = _record_fields(record)
        if fields:
            parts.append(" ".join(f"{k}={_format_value(v)}" for k, v in fields.items()))

        msg = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "qchat" logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines on stderr instead of the human format
        log_file: Optional file path; always written as JSON lines
    """
    logger = logging.getLogger("qchat")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    # stderr keeps the chat stream on stdout clean
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str = "qchat") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


class SessionLogger:
    """
    Logging for one generation session.

    The clock starts at construction; finished() measures the session
    from there and reports it as fields.
    """

    def __init__(self, session_id: int, logger: Optional[logging.Logger] = None):
        self.session_id = session_id
        self.logger = logger or get_logger("qchat.engine")
        self.start_time = time.perf_counter()

    def log(self, level: int, msg: str, **fields):
        self.logger.log(level, msg, extra={"session_id": self.session_id, "fields": fields})

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    def started(self, prompt_tokens: int):
        self.log(logging.DEBUG, "session started", prompt_tokens=prompt_tokens)

    def finished(self, stop_reason: str, prompt_tokens: int, output_tokens: int) -> float:
        """Log the session summary. Returns the elapsed time in ms."""
        elapsed_ms = self.elapsed_ms()
        tokens_per_second = output_tokens / max(elapsed_ms / 1000, 1e-9)
        self.log(
            logging.INFO,
            "session finished",
            finish_reason=stop_reason,
            prompt_tokens=prompt_tokens,
            output_tokens=output_tokens,
            elapsed_ms=elapsed_ms,
            tokens_per_second=tokens_per_second,
        )
        return elapsed_ms

    def aborted(self, error: BaseException, output_tokens: int):
        """Session ended by an exception, or by the caller closing the stream."""
        if isinstance(error, Exception):
            self.log(
                logging.WARNING,
                "session aborted",
                error=f"{type(error).__name__}: {error}",
                output_tokens=output_tokens,
            )
        else:
            self.log(logging.DEBUG, "session closed by caller", output_tokens=output_tokens)
