"""Logging filter that keeps broker credentials out of log output.

Secret values are gathered from the resolved config: any string whose key
matches one of ``logging.redact_patterns`` (case-insensitive shell globs,
e.g. ``*password*``).  The filter then replaces those values with
``[REDACTED]`` in every record's message and arguments.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Iterable, Optional

REDACTED = "[REDACTED]"

# Values this short would redact ordinary text.
_MIN_SECRET_LEN = 2


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs known secret values."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self._pattern: Optional[re.Pattern] = None
        for value in secret_values or ():
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        """Register an additional secret value at runtime."""
        if not value or len(value) < _MIN_SECRET_LEN or value in self._secrets:
            return
        self._secrets.add(value)
        # Longest first so a secret containing another is replaced whole.
        alternatives = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in alternatives))

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self._scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) for a in record.args)
        return True

    def _scrub(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        return self._pattern.sub(REDACTED, value)


def collect_secret_values(config: Any, patterns: list[str] | None = None) -> list[str]:
    """Collect string values of *config* whose keys match *patterns*.

    *config* may be a nested dict/list structure, typically the result of
    :func:`dataclasses.asdict` on the application config.
    """
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config)
    return found
