"""Session persistence as one JSON document per session."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from errors import PersistenceFailure
from models import Segment, SessionRecord, Summary

logger = logging.getLogger(__name__)

SUFFIX = ".session.json"


def record_to_dict(record: SessionRecord) -> dict:
    return asdict(record)


def record_from_dict(data: dict) -> SessionRecord:
    summary_data = data.get("summary")
    summary = None
    if summary_data:
        summary = Summary(
            **{
                key: tuple(value) if isinstance(value, list) else value
                for key, value in summary_data.items()
            }
        )
    return SessionRecord(
        id=data["id"],
        date=data.get("date", ""),
        duration_sec=int(data.get("duration_sec", 0)),
        segments=tuple(Segment(**seg) for seg in data.get("segments", [])),
        summary=summary,
        metadata=dict(data.get("metadata", {})),
    )


class JsonSessionStore:
    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    def path_for(self, session_id: str) -> Path:
        return self._dir / f"{session_id}{SUFFIX}"

    def save(self, record: SessionRecord) -> None:
        target = self.path_for(record.id)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(record_to_dict(record), handle, ensure_ascii=False, indent=2)
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"could not write {target}: {exc}") from exc
        logger.info("saved session %s to %s", record.id, target)

    def load(self, session_id: str) -> Optional[SessionRecord]:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return record_from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
            raise PersistenceFailure(f"could not read {path}: {exc}") from exc

    def list_sessions(self) -> list[str]:
        if not self._dir.exists():
            return []
        paths = sorted(
            self._dir.glob(f"*{SUFFIX}"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.name[: -len(SUFFIX)] for p in paths]
