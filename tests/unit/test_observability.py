from __future__ import annotations

import json
import logging
import sys

from agent_workqueue.observability import (
    _JsonFormatter,
    configure_observability,
    get_logger,
    get_tracer,
    set_task_context,
)


def test_configure_observability_no_endpoint_is_noop():
    configure_observability(service_name='agent-workqueue', otlp_endpoint=None)


def test_configure_observability_is_idempotent_for_json_handler(monkeypatch):
    import agent_workqueue.observability as observability

    root = logging.getLogger('agent_workqueue')
    original_handlers = list(root.handlers)
    original_level = root.level

    try:
        for handler in list(root.handlers):
            if isinstance(handler, logging.StreamHandler) and isinstance(
                getattr(handler, 'formatter', None), _JsonFormatter
            ):
                root.removeHandler(handler)

        monkeypatch.setattr(observability, '_configured', False)
        monkeypatch.setattr(observability, '_configured_otlp_endpoint', None)

        configure_observability(service_name='agent-workqueue', otlp_endpoint=None)
        configure_observability(service_name='agent-workqueue', otlp_endpoint='  ')

        json_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
        ]
        assert len(json_handlers) == 1
        assert root.level == logging.INFO
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_configure_observability_applies_log_level(monkeypatch):
    import agent_workqueue.observability as observability

    root = logging.getLogger('agent_workqueue')
    original_level = root.level
    monkeypatch.setattr(observability, '_configured', True)
    try:
        configure_observability(service_name='agent-workqueue', otlp_endpoint=None, log_level='debug')
        assert root.level == logging.DEBUG
        configure_observability(service_name='agent-workqueue', otlp_endpoint=None, log_level='nonsense')
        assert root.level == logging.INFO
    finally:
        root.setLevel(original_level)


def test_json_formatter_includes_correlation_fields():
    fmt = _JsonFormatter('agent-workqueue')
    set_task_context(task_id='tid-1', stage='sweeper')
    try:
        logger = get_logger('agent_workqueue.test_fmt')
        record = logger.makeRecord(
            'agent_workqueue.test_fmt', logging.INFO, 'test.py', 1,
            'hello %s', ('world',), None,
        )
        parsed = json.loads(fmt.format(record))
        assert parsed['msg'] == 'hello world'
        assert parsed['task_id'] == 'tid-1'
        assert parsed['stage'] == 'sweeper'
        assert parsed['level'] == 'INFO'
        assert parsed['service'] == 'agent-workqueue'
    finally:
        set_task_context(task_id=None, stage=None)


def test_json_formatter_omits_empty_context_and_renders_exceptions():
    fmt = _JsonFormatter()
    set_task_context(task_id=None, stage=None)
    try:
        raise RuntimeError('boom')
    except RuntimeError:
        record = logging.getLogger('agent_workqueue.test_exc').makeRecord(
            'agent_workqueue.test_exc', logging.ERROR, 'test.py', 1,
            'failed', (), sys.exc_info(),
        )
    parsed = json.loads(fmt.format(record))
    assert 'task_id' not in parsed
    assert 'stage' not in parsed
    assert 'service' not in parsed
    assert 'RuntimeError: boom' in parsed['exc']


def test_get_tracer_returns_usable_span_context():
    tracer = get_tracer('agent_workqueue.test')
    with tracer.start_as_current_span('test.span') as span:
        span.set_attribute('k', 'v')
