"""Secret redaction for step output and log records.

Secret values resolved from the secret store are registered with a
:class:`Redactor`; every captured step output passes through it before it
is stored, and :class:`RedactingFilter` masks the same values in log
records so secrets never reach a handler verbatim.
"""

from __future__ import annotations

import logging
import threading

MASK = "****"


class Redactor:
    """Thread-safe registry of secret values to mask."""

    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def add(self, value: str) -> None:
        # Values shorter than 3 characters are never masked
        if value and len(value) >= 3:
            with self._lock:
                self._secrets.add(value)

    def __len__(self) -> int:
        return len(self._secrets)

    def redact(self, text: str) -> str:
        if not text or not self._secrets:
            return text
        with self._lock:
            # Longest first, so a secret containing another is masked whole
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, MASK)
        return text


class RedactingFilter(logging.Filter):
    """A logging.Filter that masks registered secrets in each record.

    Attach it to the handlers that write records out::

        handler.addFilter(RedactingFilter(redactor))
    """

    def __init__(self, redactor: Redactor) -> None:
        super().__init__()
        self._redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        if len(self._redactor):
            message = record.getMessage()
            redacted = self._redactor.redact(message)
            if redacted != message:
                record.msg = redacted
                record.args = None
        return True
