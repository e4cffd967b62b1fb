from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

from agent_workqueue.config import load_settings
from agent_workqueue.main import build_service, open_repository
from agent_workqueue.observability import configure_observability
from agent_workqueue.service_layers import format_summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='awq', description='Drive the agent work queue pipeline')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Work queue API base URL')
    parser.add_argument(
        '--api-token',
        default=os.getenv('AWQ_API_TOKEN', ''),
        help='Shared API token (default: $AWQ_API_TOKEN)',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    submit = sub.add_parser('submit', help='Submit a task through idempotent intake')
    submit.add_argument('--title', required=True, help='Task title')
    submit.add_argument('--description', default='', help='Optional task description')
    submit.add_argument('--assigned-to', default='', help='Agent code (me, alex, sam, lyra, nova, ops, agent)')
    submit.add_argument('--status', default='', choices=['', 'suggested', 'backlog'], help='Initial status (default: suggested)')
    submit.add_argument('--intent-window', default='', help='Dedup window start (ISO-8601) or opaque label')
    submit.add_argument('--source-task', default='', help='Source task id for a verification task')

    guardrail = sub.add_parser('guardrail', help='Run one guardrail pass over suggested tasks')
    guardrail.add_argument('--max', type=int, default=None, help='Tasks to process (1-3)')

    worker = sub.add_parser('worker', help='Claim and execute one backlog task')
    worker.add_argument('--assignee', default='agent', help='Worker agent code')
    worker.add_argument('--max', type=int, default=None, help='Accepted for compatibility; one task per run')

    heartbeat = sub.add_parser('heartbeat', help='Renew the lease on an in-progress task')
    heartbeat.add_argument('task_id')
    heartbeat.add_argument('--assignee', default='agent', help='Agent code holding the claim')

    sub.add_parser('status', help='Show task counts by status and assignee')

    requeue = sub.add_parser('requeue-leases', help='Return in-progress tasks with expired leases to backlog')
    requeue.add_argument('--max', type=int, default=None, help='Tasks to requeue (default 10, max 20)')

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--status', default='', help='Filter by status')
    tasks.add_argument('--assigned-to', default='', help='Filter by assignee')
    tasks.add_argument('--limit', type=int, default=100)

    events = sub.add_parser('events', help='Show the audit trail of one task')
    events.add_argument('task_id')

    sub.add_parser('sweep', help='Run the evidence sweeper locally against AWQ_DATABASE_URL')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def run_sweep() -> int:
    try:
        settings = load_settings()
        configure_observability(
            service_name=settings.service_name,
            otlp_endpoint=settings.otel_endpoint,
            log_level=settings.log_level,
        )
        service = build_service(settings, repository=open_repository(settings))
        result = service.run_sweeper()
    except Exception as exc:
        message = str(exc).strip() or exc.__class__.__name__
        print(f'evidence_sweeper_error {message}', file=sys.stderr)
        return 1
    print(format_summary(result))
    return 0


def sweeper_main() -> int:
    return run_sweep()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'sweep':
        return run_sweep()

    base = args.api_base.rstrip('/')
    headers: dict[str, str] = {}
    token = str(args.api_token or '').strip()
    if token:
        headers[str(os.getenv('AWQ_API_TOKEN_HEADER', 'x-awq-api-token') or 'x-awq-api-token')] = token

    with httpx.Client(timeout=60, headers=headers) as client:
        if args.command == 'submit':
            response = client.post(
                f'{base}/api/agent-task',
                json={
                    'title': args.title,
                    'description': (args.description.strip() or None),
                    'assigned_to': (args.assigned_to.strip() or None),
                    'status': (args.status.strip() or None),
                    'intent_window': (args.intent_window.strip() or None),
                    'source_task_ref': (args.source_task.strip() or None),
                },
            )
        elif args.command == 'guardrail':
            response = client.post(f'{base}/api/autonomy', json={'action': 'guardrail', 'max': args.max})
        elif args.command == 'worker':
            response = client.post(
                f'{base}/api/autonomy',
                json={'action': 'worker', 'assignee': args.assignee, 'max': args.max},
            )
        elif args.command == 'heartbeat':
            response = client.post(
                f'{base}/api/autonomy',
                json={'action': 'heartbeat', 'task_id': args.task_id, 'assignee': args.assignee},
            )
        elif args.command == 'status':
            response = client.post(f'{base}/api/autonomy', json={'action': 'status'})
        elif args.command == 'requeue-leases':
            response = client.post(f'{base}/api/autonomy', json={'action': 'requeue_leases', 'max': args.max})
        elif args.command == 'tasks':
            params: dict[str, object] = {'limit': int(args.limit)}
            if args.status.strip():
                params['status'] = args.status.strip()
            if args.assigned_to.strip():
                params['assigned_to'] = args.assigned_to.strip()
            response = client.get(f'{base}/api/tasks', params=params)
        elif args.command == 'events':
            response = client.get(f'{base}/api/tasks/{args.task_id}/events')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
