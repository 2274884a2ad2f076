"""Simple JSON-based config store."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path


@dataclass
class AutoSummaryConfig:
    min_segments: int = 5
    min_words: int = 50
    interval_seconds: int = 30
    enable_auto_generation: bool = True


@dataclass
class RateLimitConfig:
    requests_per_minute: int = 15
    tokens_per_month: int = 1_000_000
    per_call_timeout_ms: int = 30_000
    stop_deadline_ms: int = 3_000
    max_retry_attempts: int = 3
    backoff_base_ms: int = 1_000


def _from_dict(cls, data: object):
    if not isinstance(data, dict):
        return cls()
    names = {f.name for f in fields(cls)}
    defaults = cls()
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        default = getattr(defaults, key)
        try:
            kwargs[key] = type(default)(value)
        except (TypeError, ValueError):
            continue
    return cls(**kwargs)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "talknotes" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def get_summary_model(self) -> str:
        data = self._read_all()
        return str(data.get("summary_model", "qwen-plus"))

    def set_summary_model(self, model: str) -> None:
        data = self._read_all()
        data["summary_model"] = model
        self._write_all(data)

    def get_sessions_dir(self) -> Path:
        data = self._read_all()
        value = data.get("sessions_dir")
        if value:
            return Path(str(value)).expanduser()
        return self._path.parent / "sessions"

    def set_sessions_dir(self, path: str) -> None:
        data = self._read_all()
        data["sessions_dir"] = path
        self._write_all(data)

    def get_auto_summary(self) -> AutoSummaryConfig:
        return _from_dict(AutoSummaryConfig, self._read_all().get("auto_summary"))

    def set_auto_summary(self, config: AutoSummaryConfig) -> None:
        data = self._read_all()
        data["auto_summary"] = asdict(config)
        self._write_all(data)

    def get_rate_limits(self) -> RateLimitConfig:
        return _from_dict(RateLimitConfig, self._read_all().get("rate_limits"))

    def set_rate_limits(self, config: RateLimitConfig) -> None:
        data = self._read_all()
        data["rate_limits"] = asdict(config)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
