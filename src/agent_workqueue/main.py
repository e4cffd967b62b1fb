from __future__ import annotations

import logging

from agent_workqueue.api import create_app
from agent_workqueue.config import Settings, load_settings
from agent_workqueue.db import Database, SqlTaskRepository
from agent_workqueue.observability import configure_observability
from agent_workqueue.repository import InMemoryTaskRepository, TaskRepository
from agent_workqueue.service import ConfigurationError, PipelineService
from agent_workqueue.storage.artifacts import ArtifactStore

_log = logging.getLogger(__name__)


def open_repository(settings: Settings) -> SqlTaskRepository:
    if not settings.database_url:
        raise ConfigurationError('AWQ_DATABASE_URL is not set')
    db = Database(settings.database_url)
    db.create_schema()
    return SqlTaskRepository(db)


def build_service(settings: Settings, *, repository: TaskRepository | None = None) -> PipelineService:
    return PipelineService(
        repository=repository,
        artifact_store=ArtifactStore(settings.artifact_root),
        default_assignee=settings.default_assignee,
        intent_window_hours=settings.intent_window_hours,
        lease_minutes=settings.lease_minutes,
        risky_keywords=settings.risky_keywords,
        vague_keywords=settings.vague_keywords,
    )


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        log_level=settings.log_level,
    )

    repo: TaskRepository | None = None
    if settings.database_url:
        try:
            repo = open_repository(settings)
        except Exception:
            _log.exception('database bootstrap failed; falling back to in-memory repository')
            repo = InMemoryTaskRepository()
    else:
        # Requests that need the store answer 500 until AWQ_DATABASE_URL is configured.
        _log.error('AWQ_DATABASE_URL is not set; task store unavailable')

    return create_app(service=build_service(settings, repository=repo))
