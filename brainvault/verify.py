"""
Integrity Verifier — full-store structural scan

Every physical line gets two independent checks:
    (a) it parses as JSON
    (b) it is an object carrying id, timestamp and content
A line failing both counts two errors.  The scan never stops early.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from brainvault.errors import NotFoundError
from brainvault.store import RecordStore
from brainvault.types import REQUIRED_FIELDS

logger = logging.getLogger(__name__)


def _present(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    return value is not None and value is not False


@dataclass
class VerifyReport:
    """Result of a verification pass."""

    total: int = 0
    errors: int = 0
    problems: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "errors": self.errors,
            "ok": self.ok,
            "problems": [{"line": n, "error": msg} for n, msg in self.problems],
        }


class IntegrityVerifier:
    """Scans a record store for structural corruption."""

    def __init__(self, store: RecordStore):
        self.store = store

    def verify(self) -> VerifyReport:
        """Check every line; report the full error count.

        Raises:
            NotFoundError: The store file does not exist.
        """
        if not self.store.db_path.exists():
            raise NotFoundError(f"Store file not found: {self.store.db_path}")

        report = VerifyReport()
        for lineno, line in self.store.iter_lines():
            report.total += 1

            data: Any = None
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                report.errors += 1
                report.problems.append((lineno, "invalid JSON"))

            if not isinstance(data, dict) or not all(_present(data, k) for k in REQUIRED_FIELDS):
                report.errors += 1
                report.problems.append((lineno, "missing required fields"))

        if report.ok:
            logger.info("Verified %s: %d entries, OK", self.store.db_path, report.total)
        else:
            logger.warning(
                "Verified %s: %d entries, %d error(s)",
                self.store.db_path, report.total, report.errors,
            )
        return report
