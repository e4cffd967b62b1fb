from __future__ import annotations

from ipaddress import ip_address
import logging
import os
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_workqueue.repository import InMemoryTaskRepository, TaskRepository
from agent_workqueue.service import ConfigurationError, InputValidationError, PipelineService
from agent_workqueue.service_layers import IntakeRequest
from agent_workqueue.storage.artifacts import ArtifactStore

_log = logging.getLogger(__name__)


class AgentTaskRequest(BaseModel):
    model_config = ConfigDict(extra='ignore')

    title: str | None = Field(default=None)
    # Older callers send ``task`` / ``agentName`` instead of ``title`` / ``assigned_to``.
    task: str | None = Field(default=None)
    description: str | None = Field(default=None)
    assigned_to: str | None = Field(default=None, max_length=32)
    agentName: str | None = Field(default=None, max_length=32)
    status: str | None = Field(default=None, max_length=32)
    intent_window: str | None = Field(default=None, max_length=64)
    source_task_ref: str | None = Field(default=None, max_length=64)


class AgentTaskResponse(BaseModel):
    ok: bool
    id: str
    status: str
    assigned_to: str
    idempotency_key: str
    intent_window: str
    deduped: bool


class AutonomyRequest(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    action: str = Field(min_length=1, max_length=32)
    max_items: int | None = Field(default=None, alias='max')
    assignee: str | None = Field(default=None, max_length=32)
    task_id: str | None = Field(default=None, alias='taskId', max_length=64)


class TaskResponse(BaseModel):
    task_id: str
    title: str
    description: str | None
    status: str
    assigned_to: str
    created_at: str
    updated_at: str | None
    owner: str | None
    lease_until: str | None
    heartbeat_at: str | None
    validation_status: str | None
    artifact_path: str | None
    blocked_reason: str | None
    idempotency_key: str | None
    intent_window: str | None
    source_task_ref: str | None
    retry_count_total: int


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    actor: str | None
    payload: dict
    created_at: str


class AppState:
    def __init__(self, service: PipelineService):
        self.service = service


def _to_task_response(row: dict) -> TaskResponse:
    return TaskResponse(
        task_id=row['task_id'],
        title=row['title'],
        description=row.get('description'),
        status=row['status'],
        assigned_to=row['assigned_to'],
        created_at=row['created_at'],
        updated_at=row.get('updated_at'),
        owner=row.get('owner'),
        lease_until=row.get('lease_until'),
        heartbeat_at=row.get('heartbeat_at'),
        validation_status=row.get('validation_status'),
        artifact_path=row.get('artifact_path'),
        blocked_reason=row.get('blocked_reason'),
        idempotency_key=row.get('idempotency_key'),
        intent_window=row.get('intent_window'),
        source_task_ref=row.get('source_task_ref'),
        retry_count_total=int(row.get('retry_count_total') or 0),
    )


def create_app(
    *,
    repository: TaskRepository | None = None,
    service: PipelineService | None = None,
    artifact_root: Path | None = None,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-awq-api-token',
) -> FastAPI:
    if service is None:
        repo = repository or InMemoryTaskRepository()
        artifacts = ArtifactStore(artifact_root or (Path.cwd() / '.agents'))
        service = PipelineService(repository=repo, artifact_store=artifacts)

    app = FastAPI(title='agent-workqueue api', version='0.1.0')
    app.state.container = AppState(service=service)

    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('AWQ_API_ALLOW_REMOTE', '')).strip().lower() in {'1', 'true', 'yes', 'on'}
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('AWQ_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(
        os.getenv('AWQ_API_TOKEN_HEADER', api_access_token_header) or api_access_token_header
    ).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue
            text = str(part)
            field = f'{field}.{text}' if field else text
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str | None = None) -> dict:
        payload: dict[str, object] = {
            'ok': False,
            'error': message,
        }
        if code:
            payload['code'] = code
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=message, field=field, code='validation_error'),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):  # noqa: ARG001
        code = 'not_found' if exc.status_code == 404 else 'http_error'
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(message=str(exc.detail), code=code),
            headers=getattr(exc, 'headers', None),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):  # noqa: ARG001
        _log.error('configuration error: %s', exc)
        return JSONResponse(status_code=500, content=_error_payload(message=str(exc)))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):  # noqa: ARG001
        _log.exception('unhandled api error path=%s', request.url.path)
        message = str(exc).strip() or exc.__class__.__name__
        return JSONResponse(status_code=500, content=_error_payload(message=message))

    def get_service() -> PipelineService:
        return app.state.container.service

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/agent-task', response_model=AgentTaskResponse)
    def submit_agent_task(
        payload: AgentTaskRequest,
        service: PipelineService = Depends(get_service),
    ) -> AgentTaskResponse:
        result = service.submit_task(
            IntakeRequest(
                title=payload.title if payload.title is not None else (payload.task or ''),
                description=payload.description,
                assigned_to=payload.assigned_to if payload.assigned_to is not None else payload.agentName,
                status=payload.status,
                intent_window=payload.intent_window,
                source_task_ref=payload.source_task_ref,
            )
        )
        return AgentTaskResponse(ok=True, **result)

    @app.post('/api/autonomy')
    def run_autonomy_action(
        payload: AutonomyRequest,
        service: PipelineService = Depends(get_service),
    ) -> dict:
        action = payload.action.strip().lower()
        result = service.run_action(
            action,
            max_items=payload.max_items,
            assignee=payload.assignee,
            task_id=payload.task_id,
        )
        return {'ok': True, 'action': action, **result}

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: PipelineService = Depends(get_service),
        status: str | None = Query(default=None, max_length=32),
        assigned_to: str | None = Query(default=None, max_length=32),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[TaskResponse]:
        rows = service.list_tasks(status=status, assigned_to=assigned_to, limit=limit)
        return [_to_task_response(r) for r in rows]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: PipelineService = Depends(get_service)) -> TaskResponse:
        try:
            row = service.get_task(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(row)

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_task_events(task_id: str, service: PipelineService = Depends(get_service)) -> list[EventResponse]:
        try:
            rows = service.list_events(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return [
            EventResponse(
                seq=int(r['seq']),
                task_id=r['task_id'],
                type=r['type'],
                actor=r.get('actor'),
                payload=dict(r.get('payload') or {}),
                created_at=r['created_at'],
            )
            for r in rows
        ]

    return app
