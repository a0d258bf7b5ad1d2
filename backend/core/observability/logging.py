"""JSON structured logging with mandatory fields and PII redaction."""

import json
import logging
import re
import sys
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Iterator, Optional

from backend.core.config import settings

# Thread-local context, falling back to the process-wide run context so
# that worker threads of a batch run log the same run_id
_context = threading.local()
_run_context: dict[str, Optional[str]] = {"run_id": None, "owner_id": None}

# Identifier fields are never treated as PII
_ID_FIELDS = frozenset(
    {"run_id", "owner_id", "obligation_id", "template_id", "record_id", "workflow_id", "step_id"}
)

_RESERVED = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    }
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        self.iban_pattern = re.compile(r"\b([A-Z]{2}\d{2}[A-Z0-9]{11,30})\b")
        self.email_pattern = re.compile(r"(\b[^\s@]+@[^\s@]+\.[^\s@]+\b)")
        self.phone_pattern = re.compile(r"(\+\d[\d \-/]{6,}\d|\b\d{3}[ \-/]\d{3,4}[ \-/]?\d{3,4}\b)")

    def redact(self, text):
        """Redact IBANs, email addresses and phone numbers from text."""
        if not isinstance(text, str):
            return text
        text = self.iban_pattern.sub(self._mask_iban, text)
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_iban(self, match) -> str:
        iban = match.group(1)
        return iban[:2] + "*" * (len(iban) - 2)

    def _mask_email(self, match) -> str:
        """Mask email: keep first char of user and the domain."""
        user, domain = match.group(1).split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        phone = match.group(1)
        return phone[:2] + "*" * (len(phone) - 2)

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        run_id = getattr(_context, "run_id", None) or _run_context["run_id"] or "unknown"
        owner_id = getattr(_context, "owner_id", None) or _run_context["owner_id"] or "all"

        log_entry = {
            "run_id": run_id,
            "owner_id": owner_id,
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": self.redact(record.getMessage()),
            "ts_utc": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.redact(self.formatException(record.exc_info))

        for key, value in record.__dict__.items():
            if key in _RESERVED or key in log_entry:
                continue
            if key not in _ID_FIELDS:
                value = self.redact(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_run_id(run_id: Optional[str]) -> None:
    """Set run ID for current thread context."""
    _context.run_id = run_id


def set_owner_id(owner_id: Optional[str]) -> None:
    """Set owner ID for current thread context."""
    _context.owner_id = owner_id


@contextmanager
def run_context(run_id: str, owner_id: Optional[str] = None) -> Iterator[None]:
    """Bind run and owner IDs for every thread while the block runs."""
    previous = dict(_run_context)
    _run_context["run_id"] = run_id
    _run_context["owner_id"] = owner_id
    try:
        yield
    finally:
        _run_context.update(previous)


def init_logging(level: Optional[str] = None) -> None:
    """Initialize JSON logging on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    # stderr keeps stdout free for CLI summaries
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


logger = get_logger(__name__)
