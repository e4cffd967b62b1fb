from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import time
from typing import Callable

from agent_workqueue.domain.events import AuditNote, NoteType, is_verification_task, utc_now_iso
from agent_workqueue.domain.models import (
    DEFAULT_LEASE_MINUTES,
    AgentCode,
    TaskStatus,
    ValidationStatus,
    claimable_assignees,
    clamp_limit,
    lease_minutes_for,
    normalize_title,
    parse_timestamp,
    resolve_agent,
    sort_oldest_first,
)
from agent_workqueue.observability import get_logger, get_tracer, set_task_context
from agent_workqueue.repository import record_note
from agent_workqueue.storage.artifacts import safe_slug

_log = get_logger('agent_workqueue.service_layers.worker')

DEFAULT_REQUEUE_PER_RUN = 10
MAX_REQUEUE_PER_RUN = 20


@dataclass(frozen=True)
class PluginContext:
    task: dict
    all_tasks: list[dict]
    worker: AgentCode
    timestamp: str
    artifact_store: object


@dataclass(frozen=True)
class PluginResult:
    plugin_id: str
    notes: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecutorPlugin:
    plugin_id: str
    match: Callable[[dict], bool]
    run: Callable[[PluginContext], PluginResult]


def _weekly_progress_report(ctx: PluginContext) -> PluginResult:
    done = sort_oldest_first([t for t in ctx.all_tasks if t.get('status') == TaskStatus.DONE.value])[-15:]
    date = ctx.timestamp[:10]
    lines = [
        f'# Weekly Progress Report ({date})',
        '',
        f'Generated by worker: {ctx.worker.value}',
        '',
        '## Recently Completed Tasks',
    ]
    if done:
        lines.extend(f"- {t.get('title')} ({t.get('assigned_to')})" for t in done)
    else:
        lines.append('- No completed tasks yet.')
    lines.extend([
        '',
        '## Summary',
        f'- Completed count sampled: {len(done)}',
        '',
    ])
    path = ctx.artifact_store.write_plugin_file(f'weekly-progress-{date}.md', '\n'.join(lines))
    return PluginResult(
        plugin_id='weekly_progress_report',
        notes=('Generated weekly progress report from completed tasks.',),
        files=(str(path),),
    )


_TRIAGE_PLAYBOOK = '\n'.join([
    '# Ticket Triage Playbook',
    '',
    '## Priority Rules',
    '- P0: security/data-loss/payment outage',
    '- P1: core workflow broken',
    '- P2: degraded UX/workaround exists',
    '- P3: enhancement request',
    '',
    '## Routing',
    '- Billing -> finance queue',
    '- Access/login -> auth queue',
    '- API errors -> backend queue',
    '- UI defects -> frontend queue',
    '',
    '## SLA Targets',
    '- P0: 15 min acknowledge',
    '- P1: 1h acknowledge',
    '- P2/P3: same business day',
    '',
])


def _ticket_triage_playbook(ctx: PluginContext) -> PluginResult:
    slug = safe_slug(ctx.task.get('title'))
    path = ctx.artifact_store.write_plugin_file(f'ticket-triage-playbook-{slug}.md', _TRIAGE_PLAYBOOK)
    return PluginResult(
        plugin_id='ticket_triage_playbook',
        notes=('Generated deterministic triage playbook and routing rules.',),
        files=(str(path),),
    )


def _default_executor(ctx: PluginContext) -> PluginResult:
    slug = safe_slug(ctx.task.get('title'))
    content = '\n'.join([
        f"# Execution Note: {ctx.task.get('title')}",
        '',
        f'Generated at: {ctx.timestamp}',
        f'Worker: {ctx.worker.value}',
        '',
        'This task did not match a specialized plugin, so a default deterministic execution note was produced.',
        '',
    ])
    path = ctx.artifact_store.write_plugin_file(f'execution-note-{slug}.md', content)
    return PluginResult(
        plugin_id='default_executor',
        notes=('Used default executor plugin.',),
        files=(str(path),),
    )


def _title_has(*words: str) -> Callable[[dict], bool]:
    def _match(task: dict) -> bool:
        title = normalize_title(task.get('title'))
        return all(w in title for w in words)

    return _match


EXECUTOR_PLUGINS: tuple[ExecutorPlugin, ...] = (
    ExecutorPlugin('weekly_progress_report', _title_has('weekly', 'report'), _weekly_progress_report),
    ExecutorPlugin('ticket_triage_playbook', _title_has('ticket', 'triage'), _ticket_triage_playbook),
)

DEFAULT_PLUGIN = ExecutorPlugin('default_executor', lambda task: True, _default_executor)


def render_execution_markdown(task: dict, worker: AgentCode, timestamp: str, result: PluginResult) -> str:
    description = str(task.get('description') or '').strip() or 'No description provided.'
    lines = [
        f"# Execution: {task.get('title')}",
        '',
        f"- Task ID: {task.get('task_id')}",
        f'- Worker: {worker.value}',
        f"- Assignee: {task.get('assigned_to')}",
        f'- Plugin: {result.plugin_id}',
        '- Status Flow: backlog -> in_progress -> done',
        f'- Timestamp (UTC): {timestamp}',
        '',
        '## Description',
        description,
        '',
        '## Plugin Notes',
        *[f'- {n}' for n in result.notes],
        '',
        '## Generated Files',
        *[f'- {f}' for f in result.files],
        '',
        '## Checklist',
        '- [x] Claimed task',
        '- [x] Ran executor plugin',
        '- [x] Created execution artifact',
        '- [x] Completed deterministic worker flow',
        '',
    ]
    return '\n'.join(lines)


@dataclass
class _RunClock:
    started: datetime
    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def timestamp(self) -> str:
        return utc_now_iso(self.started)

    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


class WorkerService:
    def __init__(
        self,
        *,
        repository,
        artifact_store,
        plugins: tuple[ExecutorPlugin, ...] | None = None,
        lease_minutes: int | None = None,
    ):
        self.repository = repository
        self.artifact_store = artifact_store
        self.plugins = tuple(plugins) if plugins is not None else EXECUTOR_PLUGINS
        self.lease_minutes = lease_minutes

    def select_candidate(self, tasks: list[dict], agent: AgentCode) -> dict | None:
        # Verification tasks belong to the evidence sweeper.
        backlog = sort_oldest_first([
            t for t in tasks
            if t.get('status') == TaskStatus.BACKLOG.value and not is_verification_task(t)
        ])
        for code in claimable_assignees(agent):
            for task in backlog:
                if task.get('assigned_to') == code.value:
                    return task
        return None

    def select_plugin(self, task: dict) -> ExecutorPlugin:
        for plugin in self.plugins:
            if plugin.match(task):
                return plugin
        return DEFAULT_PLUGIN

    def run(self, *, assignee: object = None, max_items: object = None, now: datetime | None = None) -> dict:
        # max_items is accepted for call compatibility; a run claims at most one task.
        agent = resolve_agent(assignee, fallback=AgentCode.AGENT)
        tracer = get_tracer('agent_workqueue.worker')
        with tracer.start_as_current_span('worker.run') as span:
            span.set_attribute('worker.agent', agent.value)
            tasks = self.repository.list_tasks()
            selected = self.select_candidate(tasks, agent)
            if selected is None:
                _log.info('worker_run worker=%s processed=0 message=no_matching_backlog_task', agent.value)
                return {
                    'worker': agent.value,
                    'processed': 0,
                    'message': 'no_matching_backlog_task',
                }

            task_id = selected['task_id']
            set_task_context(task_id=task_id, stage='worker')
            clock = _RunClock(started=now or datetime.now(timezone.utc))
            claimed = self._claim(selected, agent, clock)
            if claimed is None:
                _log.info('worker_claim_conflict task_id=%s worker=%s', task_id, agent.value)
                return {
                    'worker': agent.value,
                    'processed': 0,
                    'message': 'claim_conflict',
                    'task_id': task_id,
                }

            plugin = self.select_plugin(claimed)
            ctx = PluginContext(
                task=claimed,
                all_tasks=tasks,
                worker=agent,
                timestamp=clock.timestamp,
                artifact_store=self.artifact_store,
            )
            try:
                result = plugin.run(ctx)
            except Exception as exc:
                _log.exception('worker_plugin_failed task_id=%s plugin=%s', task_id, plugin.plugin_id)
                return self._handle_plugin_failure(claimed, agent, plugin, clock, exc)

            markdown = render_execution_markdown(claimed, agent, clock.timestamp, result)
            try:
                artifact_path = str(self.artifact_store.write_execution_artifact(task_id, markdown))
            except Exception:
                # Task stays in_progress; the lease reaper returns it to backlog once the lease lapses.
                _log.exception('worker_artifact_write_failed task_id=%s', task_id)
                self._log_run(result.plugin_id, 'failed', agent, claimed, clock)
                raise

            lines = [f'Execution artifact: {artifact_path}', *[f'Generated file: {f}' for f in result.files]]
            note = AuditNote(
                type=NoteType.EXECUTION_ARTIFACT,
                actor=agent.value,
                message='\n'.join(lines),
                timestamp=utc_now_iso(),
                payload={
                    'artifact_path': artifact_path,
                    'generated_files': list(result.files),
                    'plugin': result.plugin_id,
                },
            )
            record_note(self.repository, claimed, note, {'artifact_path': artifact_path})
            self.repository.update_task_status(task_id, status=TaskStatus.DONE.value)
            self._log_run(result.plugin_id, 'success', agent, claimed, clock)
            _log.info(
                'worker_run worker=%s processed=1 task_id=%s plugin=%s artifact=%s',
                agent.value,
                task_id,
                result.plugin_id,
                artifact_path,
            )
            return {
                'worker': agent.value,
                'processed': 1,
                'task': {
                    'id': task_id,
                    'title': claimed.get('title'),
                    'plugin': result.plugin_id,
                    'artifact_path': artifact_path,
                    'generated_files': list(result.files),
                    'started_at': clock.timestamp,
                    'finished_status': TaskStatus.DONE.value,
                },
            }

    def heartbeat(self, *, task_id: str, assignee: object = None, now: datetime | None = None) -> dict:
        """Renew the lease on a task the agent is still executing."""
        agent = resolve_agent(assignee, fallback=AgentCode.AGENT)
        task_id = str(task_id or '').strip()
        set_task_context(task_id=task_id or None, stage='heartbeat')
        task = self.repository.get_task(task_id) if task_id else None
        reason = self._heartbeat_rejection(task, agent)
        if reason is None:
            current = now or datetime.now(timezone.utc)
            if current.tzinfo is None:
                current = current.replace(tzinfo=timezone.utc)
            minutes = lease_minutes_for(agent, default=self.lease_minutes or DEFAULT_LEASE_MINUTES)
            stamp = utc_now_iso(current)
            lease_until = utc_now_iso(current + timedelta(minutes=minutes))
            row = self.repository.renew_lease(task_id, owner=agent.value, lease_until=lease_until, heartbeat_at=stamp)
            if row is None:
                # Lost the task between the read and the write.
                reason = self._heartbeat_rejection(self.repository.get_task(task_id), agent) or 'not_in_progress'
        if reason is not None:
            _log.info('lease_heartbeat_rejected task_id=%s worker=%s reason=%s', task_id, agent.value, reason)
            return {'ok': False, 'worker': agent.value, 'task_id': task_id, 'reason': reason}

        self.repository.append_event(
            task_id,
            event_type=NoteType.LEASE_HEARTBEAT,
            payload={'owner': agent.value, 'lease_until': lease_until, 'timestamp': stamp},
            actor=agent.value,
        )
        _log.info('lease_heartbeat task_id=%s worker=%s lease_until=%s', task_id, agent.value, lease_until)
        return {'ok': True, 'worker': agent.value, 'task_id': task_id, 'lease_until': lease_until, 'heartbeat_at': stamp}

    @staticmethod
    def _heartbeat_rejection(task: dict | None, agent: AgentCode) -> str | None:
        if task is None:
            return 'not_found'
        if task.get('status') != TaskStatus.IN_PROGRESS.value:
            return 'not_in_progress'
        if task.get('owner') != agent.value:
            return 'owner_mismatch'
        return None

    def requeue_expired_leases(self, *, max_items: object = None, now: datetime | None = None) -> dict:
        limit = clamp_limit(max_items, default=DEFAULT_REQUEUE_PER_RUN, cap=MAX_REQUEUE_PER_RUN)
        current = now or datetime.now(timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        stamp = utc_now_iso(current)

        stale: list[tuple[dict, str]] = []
        for task in sort_oldest_first(self.repository.list_tasks()):
            if task.get('status') != TaskStatus.IN_PROGRESS.value:
                continue
            lease_until = parse_timestamp(task.get('lease_until'))
            if lease_until is None:
                stale.append((task, 'missing_lease'))
            elif lease_until < current:
                stale.append((task, 'stale_lease'))

        requeued: list[dict] = []
        for task, reason in stale[:limit]:
            task_id = task['task_id']
            set_task_context(task_id=task_id, stage='lease_reaper')
            row = self.repository.update_task_status_if(
                task_id,
                expected_status=TaskStatus.IN_PROGRESS.value,
                status=TaskStatus.BACKLOG.value,
                fields={'retry_count_total': int(task.get('retry_count_total') or 0) + 1},
            )
            if row is None:
                continue
            note = AuditNote(
                type=NoteType.STALE_LEASE_REQUEUED,
                actor='lease_reaper',
                message=f'stale_lease_requeued: {stamp} reason={reason}',
                timestamp=stamp,
                payload={'reason': reason, 'previous_owner': task.get('owner'), 'lease_until': task.get('lease_until')},
            )
            record_note(self.repository, row, note)
            requeued.append({'id': task_id, 'title': task.get('title'), 'owner': task.get('owner'), 'reason': reason})
            _log.info('lease_requeued task_id=%s reason=%s owner=%s', task_id, reason, task.get('owner'))

        set_task_context(task_id=None, stage='lease_reaper')
        _log.info('lease_reaper_run stale=%s requeued=%s', len(stale), len(requeued))
        return {'stale': len(stale), 'requeued': requeued}

    def _claim(self, task: dict, agent: AgentCode, clock: _RunClock) -> dict | None:
        minutes = lease_minutes_for(agent, default=self.lease_minutes or DEFAULT_LEASE_MINUTES)
        lease_until = clock.started + timedelta(minutes=minutes)
        row = self.repository.update_task_status_if(
            task['task_id'],
            expected_status=TaskStatus.BACKLOG.value,
            status=TaskStatus.IN_PROGRESS.value,
            require_unowned=True,
            fields={
                'owner': agent.value,
                'lease_until': utc_now_iso(lease_until),
                'heartbeat_at': clock.timestamp,
                'validation_status': ValidationStatus.PENDING.value,
            },
        )
        if row is not None:
            self.repository.append_event(
                task['task_id'],
                event_type=NoteType.TASK_CLAIMED,
                payload={'owner': agent.value, 'lease_until': row.get('lease_until'), 'timestamp': clock.timestamp},
                actor=agent.value,
            )
        return row

    def _handle_plugin_failure(
        self,
        task: dict,
        agent: AgentCode,
        plugin: ExecutorPlugin,
        clock: _RunClock,
        exc: Exception,
    ) -> dict:
        self._log_run(plugin.plugin_id, 'failed', agent, task, clock)
        row = self.repository.update_task_status(task['task_id'], status=TaskStatus.BACKLOG.value)
        stamp = utc_now_iso()
        message = str(exc) or exc.__class__.__name__
        note = AuditNote(
            type=NoteType.WORKER_FAILURE,
            actor=agent.value,
            message=f'Worker failure ({stamp}): {message}',
            timestamp=stamp,
            payload={'plugin': plugin.plugin_id, 'error': message},
        )
        record_note(self.repository, row, note)
        return {
            'worker': agent.value,
            'processed': 0,
            'failed': 1,
            'message': 'plugin_execution_failed',
            'task': {
                'id': task['task_id'],
                'title': task.get('title'),
                'plugin': plugin.plugin_id,
                'finished_status': TaskStatus.BACKLOG.value,
            },
            'error': message,
        }

    def _log_run(self, plugin_id: str, status: str, agent: AgentCode, task: dict, clock: _RunClock) -> None:
        entry = {
            'timestamp': utc_now_iso(),
            'plugin': plugin_id,
            'status': status,
            'duration_ms': clock.duration_ms(),
            'worker': agent.value,
            'task_id': task.get('task_id'),
            'title': task.get('title'),
        }
        try:
            self.artifact_store.append_run_log(entry)
        except OSError:
            _log.warning('executor_run_log_failed task_id=%s', task.get('task_id'), exc_info=True)
