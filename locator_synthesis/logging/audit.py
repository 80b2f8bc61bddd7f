from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

log = logging.getLogger(__name__)


class DiagnosticSink(Protocol):
    def record(self, label: str, data: Any) -> None: ...


class NullDiagnosticSink:
    """Discards every record."""

    def record(self, label: str, data: Any) -> None:
        return None


class JsonlDiagnosticSink:
    """Appends pipeline diagnostics to a JSON Lines file; write failures never reach the caller."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.diagnostics_path = self.root / "diagnostics.jsonl"

    def record(self, label: str, data: Any) -> None:
        try:
            payload = {
                "label": label,
                "timestamp": datetime.now(UTC).isoformat(),
                "data": to_jsonable(data),
            }
            with self.diagnostics_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, default=str) + "\n")
        except (OSError, TypeError, ValueError) as exc:
            log.warning("Could not record diagnostic %r: %s", label, exc)

    def read(self) -> list[dict[str, Any]]:
        if not self.diagnostics_path.exists():
            return []
        with self.diagnostics_path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]


def to_jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if is_dataclass(data) and not isinstance(data, type):
        return to_jsonable(asdict(data))
    if isinstance(data, dict):
        return {str(key): to_jsonable(value) for key, value in data.items()}
    if isinstance(data, (list, tuple, set)):
        return [to_jsonable(item) for item in data]
    return data
