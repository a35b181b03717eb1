"""Override audit trail and the JSON-lines operation journal."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from medtrack.data.schemas import OverrideLogEntry
from medtrack.data.store import KeyValueStore

SUBSTANCES_KEY = "drugs"


def override_log_key(substance_id: str) -> str:
    """Store key of a substance's override log."""
    return f"{substance_id}_overrides"


def read_override_log(store: KeyValueStore, substance_id: str) -> list[OverrideLogEntry]:
    """Override entries for a substance, oldest first."""
    entries = store.get(override_log_key(substance_id), [])
    if not isinstance(entries, list):
        return []
    return entries


def write_audit_entry(audit_path: Path, entry: dict[str, Any]) -> None:
    """Append a JSON-lines entry to an operation journal file."""
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")
