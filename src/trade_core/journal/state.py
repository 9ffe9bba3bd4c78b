"""Crash-recovery snapshots of long-lived core state."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from trade_core.utils.logging import get_logger

_SCHEMA_VERSION = 1


class StateStore:
    """Single JSON snapshot written atomically via temp file + replace."""

    def __init__(self, state_file: Path) -> None:
        self._state_file = state_file
        self._logger = get_logger("trade_core.journal.state")

    @property
    def path(self) -> Path:
        return self._state_file

    def save(self, payload: dict[str, Any]) -> None:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        document = {"schema_version": _SCHEMA_VERSION, **payload}
        serialized = json.dumps(document, ensure_ascii=True, indent=2)
        tmp_path = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        tmp_path.write_text(serialized, encoding="utf-8")
        os.replace(tmp_path, self._state_file)

    def load(self) -> dict[str, Any] | None:
        """Return the last snapshot, or None when absent or unreadable."""
        if not self._state_file.exists():
            return None
        try:
            raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("state_snapshot_unreadable", path=str(self._state_file), error=str(exc))
            return None
        if not isinstance(raw, dict):
            return None
        if raw.get("schema_version") != _SCHEMA_VERSION:
            self._logger.warning(
                "state_snapshot_schema_mismatch",
                found=raw.get("schema_version"),
                expected=_SCHEMA_VERSION,
            )
            return None
        return raw
