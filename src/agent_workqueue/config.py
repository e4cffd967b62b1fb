from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_url: str | None
    artifact_root: Path
    service_name: str
    otel_endpoint: str | None
    intent_window_hours: int
    default_assignee: str
    lease_minutes: int
    risky_keywords: tuple[str, ...] | None
    vague_keywords: tuple[str, ...] | None
    log_level: str = 'INFO'


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_keywords(name: str) -> tuple[str, ...] | None:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return None
    out: list[str] = []
    for item in raw.split(','):
        text = ' '.join(item.strip().lower().split())
        if text and text not in out:
            out.append(text)
    return tuple(out) or None


def load_settings() -> Settings:
    database_url = (os.getenv('AWQ_DATABASE_URL', '') or '').strip() or None
    artifact_root = Path(os.getenv('AWQ_ARTIFACT_ROOT', '.agents')).resolve()
    service_name = os.getenv('AWQ_SERVICE_NAME', 'agent-workqueue')
    otel_endpoint = os.getenv('AWQ_OTEL_EXPORTER_OTLP_ENDPOINT')
    intent_window_hours = _env_int('AWQ_INTENT_WINDOW_HOURS', 3, minimum=1)
    default_assignee = str(os.getenv('AWQ_DEFAULT_ASSIGNEE', 'sam') or 'sam').strip().lower() or 'sam'
    lease_minutes = _env_int('AWQ_LEASE_MINUTES', 45, minimum=5)
    return Settings(
        database_url=database_url,
        artifact_root=artifact_root,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        intent_window_hours=intent_window_hours,
        default_assignee=default_assignee,
        lease_minutes=lease_minutes,
        risky_keywords=_env_keywords('AWQ_GUARDRAIL_RISKY_KEYWORDS'),
        vague_keywords=_env_keywords('AWQ_GUARDRAIL_VAGUE_KEYWORDS'),
        log_level=(os.getenv('AWQ_LOG_LEVEL', '') or 'INFO').strip().upper() or 'INFO',
    )
