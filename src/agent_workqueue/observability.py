from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_stage_var: ContextVar[str | None] = ContextVar('stage', default=None)

ROOT_LOGGER = 'agent_workqueue'


def set_task_context(task_id: str | None = None, stage: str | None = None) -> None:
    """Tag subsequent log lines with the task being handled and the pipeline stage."""
    _task_id_var.set(task_id)
    _stage_var.set(stage)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: service, task and stage correlation included when known."""

    def __init__(self, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if self.service_name:
            payload['service'] = self.service_name
        for key, var in (('task_id', _task_id_var), ('stage', _stage_var)):
            value = getattr(record, key, None) or var.get(None)
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _resolve_level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value or 'INFO').strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_observability(
    *,
    service_name: str,
    otlp_endpoint: str | None,
    log_level: str | int | None = 'INFO',
) -> None:
    """Install the JSON stderr handler once, then the OTLP span exporter when an endpoint is set."""
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        root = logging.getLogger(ROOT_LOGGER)
        if not _configured:
            if not any(isinstance(getattr(h, 'formatter', None), _JsonFormatter) for h in root.handlers):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter(service_name))
                root.addHandler(handler)
            _configured = True
        root.setLevel(_resolve_level(log_level))

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger(f'{ROOT_LOGGER}.observability').warning(
            'OpenTelemetry SDK unavailable; spans stay no-op', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint


def get_tracer(name: str):
    """No-op tracer until configure_observability installs a provider."""
    from opentelemetry import trace

    return trace.get_tracer(name)
