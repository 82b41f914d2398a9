"""
Write-Ahead Log — append-only intent log

One line per mutating operation, written before the store is touched:

    [2026-02-14T10:30:22+00:00] [ADD] [<sha256 of the record line>]

The log is an audit trail.  Nothing reconstructs the store from it; a hash in
the log references a record that is not guaranteed to be durable.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List, Union

from brainvault.types import WalEntry, now_iso

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r"^\[([^\]]*)\] \[([A-Z_]+)\] \[([^\]]*)\]$")


class WriteAheadLog:
    """Append-only intent log for one store."""

    def __init__(self, path: Union[str, Path], *, fsync: bool = True):
        self.path = Path(path)
        self._fsync = fsync
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, operation: str, content_hash: str) -> WalEntry:
        """Write one intent line. Raises OSError if the line cannot be written."""
        op = operation.strip().upper()
        if not op:
            raise ValueError("operation must not be empty")
        entry = WalEntry(timestamp=now_iso(), operation=op, content_hash=content_hash)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.to_line() + "\n")
            f.flush()
            if self._fsync:
                os.fsync(f.fileno())
        logger.debug("WAL %s %s", op, content_hash[:16])
        return entry

    def entries(self) -> List[WalEntry]:
        """Parse the log. Unparseable lines are skipped with a warning."""
        if not self.path.exists():
            return []
        out: List[WalEntry] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.rstrip("\n")
                if not line:
                    continue
                m = _LINE_RE.match(line)
                if m is None:
                    logger.warning("Unparseable WAL line %d in %s", lineno, self.path)
                    continue
                out.append(WalEntry(*m.groups()))
        return out

    def __len__(self) -> int:
        return len(self.entries())
