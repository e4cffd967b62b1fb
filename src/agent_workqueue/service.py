from __future__ import annotations

from datetime import datetime

from agent_workqueue.domain.models import AgentCode, TaskStatus, ValidationStatus
from agent_workqueue.observability import get_logger
from agent_workqueue.repository import TaskRepository
from agent_workqueue.service_layers import (
    ExecutorPlugin,
    GuardrailService,
    IntakeRequest,
    IntakeService,
    SweeperService,
    WorkerService,
    default_checks,
)
from agent_workqueue.storage.artifacts import ArtifactStore

_log = get_logger('agent_workqueue.service')


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class ConfigurationError(RuntimeError):
    """Required configuration (e.g. the task store location) is missing."""


ACTIONS = ('guardrail', 'worker', 'heartbeat', 'status', 'requeue_leases')


class PipelineService:
    def __init__(
        self,
        *,
        repository: TaskRepository | None,
        artifact_store: ArtifactStore,
        default_assignee: str | AgentCode = AgentCode.SAM,
        intent_window_hours: int = 3,
        lease_minutes: int | None = None,
        risky_keywords: tuple[str, ...] | None = None,
        vague_keywords: tuple[str, ...] | None = None,
        plugins: tuple[ExecutorPlugin, ...] | None = None,
        missing_repository_message: str = 'AWQ_DATABASE_URL is not set',
    ):
        self.repository = repository
        self.artifact_store = artifact_store
        self._missing_repository_message = missing_repository_message
        self.intake = IntakeService(
            repository=repository,
            validation_error_cls=InputValidationError,
            default_assignee=default_assignee,
            intent_window_hours=intent_window_hours,
        )
        self.guardrail = GuardrailService(
            repository=repository,
            checks=default_checks(risky_keywords=risky_keywords, vague_keywords=vague_keywords),
        )
        self.worker = WorkerService(
            repository=repository,
            artifact_store=artifact_store,
            plugins=plugins,
            lease_minutes=lease_minutes,
        )
        self.sweeper = SweeperService(repository=repository, artifact_store=artifact_store)

    def submit_task(self, request: IntakeRequest, *, now: datetime | None = None) -> dict:
        self._require_repository()
        return self.intake.submit(request, now=now)

    def run_action(
        self,
        action: str,
        *,
        max_items: object = None,
        assignee: object = None,
        task_id: str | None = None,
    ) -> dict:
        name = str(action or '').strip().lower()
        if name == 'guardrail':
            return self.run_guardrail(max_items=max_items)
        if name == 'worker':
            return self.run_worker(assignee=assignee, max_items=max_items)
        if name == 'heartbeat':
            return self.heartbeat(task_id=task_id, assignee=assignee)
        if name == 'status':
            return self.status_summary()
        if name == 'requeue_leases':
            return self.requeue_expired_leases(max_items=max_items)
        raise InputValidationError(
            f'unknown action: {name or "<empty>"}; expected one of {", ".join(ACTIONS)}',
            field='action',
            code='unknown_action',
        )

    def run_guardrail(self, *, max_items: object = None) -> dict:
        self._require_repository()
        return self.guardrail.run(max_items=max_items)

    def run_worker(self, *, assignee: object = None, max_items: object = None, now: datetime | None = None) -> dict:
        self._require_repository()
        return self.worker.run(assignee=assignee, max_items=max_items, now=now)

    def heartbeat(self, *, task_id: str | None, assignee: object = None, now: datetime | None = None) -> dict:
        self._require_repository()
        if not str(task_id or '').strip():
            raise InputValidationError('task_id is required', field='task_id')
        return self.worker.heartbeat(task_id=str(task_id), assignee=assignee, now=now)

    def run_sweeper(self, *, now: datetime | None = None) -> dict:
        self._require_repository()
        return self.sweeper.run(now=now)

    def requeue_expired_leases(self, *, max_items: object = None, now: datetime | None = None) -> dict:
        self._require_repository()
        return self.worker.requeue_expired_leases(max_items=max_items, now=now)

    def status_summary(self) -> dict:
        self._require_repository()
        tasks = self.repository.list_tasks()
        by_status = {s.value: 0 for s in TaskStatus}
        by_assignee = {a.value: 0 for a in AgentCode}
        validation_failed = 0
        for task in tasks:
            status = str(task.get('status') or '')
            by_status[status] = by_status.get(status, 0) + 1
            assignee = str(task.get('assigned_to') or '')
            by_assignee[assignee] = by_assignee.get(assignee, 0) + 1
            if task.get('validation_status') == ValidationStatus.FAIL.value:
                validation_failed += 1
        return {
            'total': len(tasks),
            'by_status': by_status,
            'by_assignee': by_assignee,
            'validation_failed': validation_failed,
        }

    def list_tasks(self, *, status: str | None = None, assigned_to: str | None = None, limit: int = 100) -> list[dict]:
        self._require_repository()
        rows = self.repository.list_tasks()
        if status:
            rows = [r for r in rows if r.get('status') == status]
        if assigned_to:
            rows = [r for r in rows if r.get('assigned_to') == assigned_to]
        return rows[: max(1, int(limit))]

    def get_task(self, task_id: str) -> dict:
        self._require_repository()
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def list_events(self, task_id: str) -> list[dict]:
        self._require_repository()
        return self.repository.list_events(task_id)

    def _require_repository(self) -> None:
        if self.repository is None:
            raise ConfigurationError(self._missing_repository_message)
