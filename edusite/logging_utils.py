import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import config

# Set by the request logging middleware for the duration of a request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes passed through `extra=` that end up in the output
REQUEST_FIELDS = ("method", "path", "status", "duration_ms")
CONTEXT_FIELDS = ("cache", "key", "age_s", "found", "email", "outcome", "client", "user_agent")
DETAIL_FIELDS = ("url", "errors", "error")


def record_fields(record: logging.LogRecord, names: Tuple[str, ...]) -> Iterator[Tuple[str, Any]]:
    for name in names:
        val = getattr(record, name, None)
        if val is not None:
            yield name, val


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(record_fields(record, REQUEST_FIELDS + CONTEXT_FIELDS + DETAIL_FIELDS))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Single-line, optionally coloured output for a terminal.

    Layout: LEVEL time [rid] logger METHOD path status Nms - message [k=v ...]
    """

    RESET = "\033[0m"
    LEVELS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    # status class (2xx, 3xx, ...) -> colour
    STATUS = {2: "\033[32m", 3: "\033[36m", 4: "\033[33m", 5: "\033[31m"}
    MUTED = "\033[90m"
    UA_MAX = 64

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def paint(self, text: str, color: Optional[str]) -> str:
        if not self.use_color or not color:
            return text
        return f"{color}{text}{self.RESET}"

    def _request(self, record: logging.LogRecord) -> List[str]:
        fields = dict(record_fields(record, REQUEST_FIELDS))
        out = []
        if "method" in fields:
            out.append(self.paint(fields["method"], "\033[1m"))
        if "path" in fields:
            out.append(self.paint(fields["path"], "\033[36m"))
        status = fields.get("status")
        if isinstance(status, int):
            out.append(self.paint(str(status), self.STATUS.get(status // 100, "\033[31m")))
        if "duration_ms" in fields:
            out.append(self.paint(f"{fields['duration_ms']}ms", self.MUTED))
        return out

    def _context(self, record: logging.LogRecord) -> Optional[str]:
        pairs = []
        for name, val in record_fields(record, CONTEXT_FIELDS):
            if name == "user_agent":
                val = val if len(val) <= self.UA_MAX else val[:self.UA_MAX - 3] + "..."
                pairs.append(f"ua=\"{val}\"")
            else:
                pairs.append(f"{name}={val}")
        if not pairs:
            return None
        return self.paint("[" + " ".join(pairs) + "]", self.MUTED)

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            self.paint(record.levelname, self.LEVELS.get(record.levelname)),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self.paint(f"rid={rid}", "\033[35m"))
        parts.append(self.paint(record.name, "\033[34m"))
        parts.extend(self._request(record))

        msg = record.getMessage()
        if msg:
            parts += ["-", msg]
        ctx = self._context(record)
        if ctx:
            parts.append(ctx)
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pretty_output(log_format: str) -> bool:
    if log_format in ("pretty", "json"):
        return log_format == "pretty"
    isatty = getattr(sys.stdout, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        # closed stream
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Route root and uvicorn logs through one stdout handler.

    LOG_FORMAT picks ``json`` or ``pretty``; unset means pretty on a TTY and
    JSON otherwise. LOG_COLOR=0 turns colours off in pretty mode.
    """
    handler = logging.StreamHandler(sys.stdout)
    if _pretty_output(config.LOG_FORMAT):
        handler.setFormatter(ColorFormatter(use_color=config.LOG_COLOR))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False
    return root


def get_logger(name: str = "edusite") -> logging.Logger:
    return logging.getLogger(name)
