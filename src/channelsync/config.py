from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping


@dataclass
class SyncConfig:
    match_window_ms: int = 5_000
    pending_timeout_ms: int = 5_000
    upload_safety_timeout_ms: int = 60_000
    retry_base_delay_s: float = 0.5
    retry_max_delay_s: float = 30.0
    retry_max_attempts: int = 6
    heartbeat_interval_s: float = 25.0
    dispatch_dedupe_size: int = 512
    notification_icon: str = "/app-icon.png"
    notification_badge: str = "/favicon.png"
    rest_url: str = ""
    realtime_url: str = ""
    api_key: str = ""
    read_marker_db: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SyncConfig":
        """Build a config from ``data``, ignoring keys it does not know."""

        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            field = known.get(key)
            if field is None or value is None:
                continue
            default = getattr(cls, key)
            if isinstance(default, bool) or not isinstance(default, (int, float)):
                values[key] = value
            else:
                values[key] = type(default)(value)
        return cls(**values)


def load_config(path: Path | str | None = None) -> SyncConfig:
    if path is None:
        return SyncConfig()
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return SyncConfig()
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a JSON object")
    return SyncConfig.from_mapping(data)
