"""Classification of MakeMKV messages into info, warnings and errors.

MSG flags are not a reliable error indicator, so classification works on
message codes and text. A fixed set of codes are known success messages
("Backup done", "Backing up disc", ...) and are never treated as errors even
when their wording overlaps error vocabulary.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .protocol import Message

logger = logging.getLogger(__name__)

SUCCESS_CODES = frozenset({5010, 5011, 5070, 5072, 5081, 5085})

ERROR_VOCABULARY = ("error", "failed", "cannot", "unable")
WARNING_VOCABULARY = ("warning", "skipped")

# Checked first: any of these aborts the backup
FATAL_PATTERNS = (
    "out of memory",
    "disk full",
    "cannot create",
    "permission denied",
    "access denied",
    "destination folder",
    "invalid",
    "fatal",
)

# Per-file or per-sector faults the rest of the backup can survive
RECOVERABLE_PATTERNS = (
    "hash check failed",
    "read error",
    "error reading",
    "scsi error",
    "operation was cancelled",
    "bad sector",
)

FILE_PATTERN = re.compile(r"(?:file|title)\s+(\d+\.m2ts|\w+\.\w+)", re.IGNORECASE)
OFFSET_PATTERNS = (
    re.compile(r"offset[:\s]+(\d+)", re.IGNORECASE),
    re.compile(r"at\s+(\d+)\s+bytes", re.IGNORECASE),
)


class Severity(Enum):
    """How a message affects the running backup."""

    INFO = "info"
    WARNING = "warning"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class ErrorKind(Enum):
    """Coarse error type extracted from message text."""

    HASH_CHECK = "Hash check failed"
    READ_ERROR = "Read error"
    SAVE_FAILURE = "Failed to save"
    UNKNOWN = "Unknown error"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured detail of one error seen during a backup."""

    message: str
    file: str | None = None
    kind: ErrorKind = ErrorKind.UNKNOWN
    offset: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "file": self.file,
            "error": self.kind.value,
            "offset": self.offset,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Classification:
    """Result of classifying one MSG record."""

    severity: Severity
    record: ErrorRecord | None = None

    @property
    def is_error(self) -> bool:
        return self.severity in (Severity.RECOVERABLE, Severity.FATAL)


def is_success_code(code: int) -> bool:
    return code in SUCCESS_CODES


def has_error_text(text: str) -> bool:
    lower = text.lower()
    return any(word in lower for word in ERROR_VOCABULARY) or any(
        pattern in lower for pattern in RECOVERABLE_PATTERNS
    )


def is_recoverable_error(text: str) -> bool:
    """Decide whether an error message still allows the backup to continue.

    Fatal patterns win over recoverable ones, and text matching neither is
    treated as fatal.
    """
    lower = text.lower()

    if any(pattern in lower for pattern in FATAL_PATTERNS):
        return False
    return any(pattern in lower for pattern in RECOVERABLE_PATTERNS)


def parse_error_message(text: str | None) -> ErrorRecord:
    """Extract file name, error kind and byte offset from an error message."""
    if not text:
        return ErrorRecord(message=text or "")

    file_match = FILE_PATTERN.search(text)

    lower = text.lower()
    if "hash check failed" in lower:
        kind = ErrorKind.HASH_CHECK
    elif "read error" in lower or "error reading" in lower:
        kind = ErrorKind.READ_ERROR
    elif "failed to save" in lower:
        kind = ErrorKind.SAVE_FAILURE
    else:
        kind = ErrorKind.UNKNOWN

    offset = None
    for pattern in OFFSET_PATTERNS:
        offset_match = pattern.search(text)
        if offset_match:
            offset = int(offset_match.group(1))
            break

    return ErrorRecord(
        message=text,
        file=file_match.group(1) if file_match else None,
        kind=kind,
        offset=offset,
    )


def classify_message(message: Message) -> Classification:
    """Classify a MSG record."""
    if is_success_code(message.code):
        return Classification(Severity.INFO)

    if has_error_text(message.text):
        record = parse_error_message(message.text)
        if is_recoverable_error(message.text):
            return Classification(Severity.RECOVERABLE, record)
        return Classification(Severity.FATAL, record)

    lower = message.text.lower()
    if any(word in lower for word in WARNING_VOCABULARY):
        return Classification(Severity.WARNING)

    return Classification(Severity.INFO)
