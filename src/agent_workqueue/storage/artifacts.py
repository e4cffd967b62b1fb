from __future__ import annotations

import json
import re
from pathlib import Path

from agent_workqueue.domain.events import parse_artifact_path

# Plugin note prefixes checked, in order, when a task carries no usable artifact reference.
EVIDENCE_PLUGIN_PREFIXES = ('execution-note', 'capital-trade', 'web-research', 'x-scout')

_SLUG_RE = re.compile(r'[^a-z0-9]+')


def safe_slug(value: str | None) -> str:
    slug = _SLUG_RE.sub('-', str(value or '').lower()).strip('-')[:60]
    return slug or 'task'


def file_exists(path: str | Path | None) -> bool:
    if not path:
        return False
    try:
        return Path(path).is_file()
    except (OSError, ValueError):
        return False


class ArtifactStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def executions_dir(self) -> Path:
        return self.root / 'executions'

    @property
    def plugins_dir(self) -> Path:
        return self.root / 'plugins'

    @property
    def run_log_path(self) -> Path:
        return self.root / 'metrics' / 'executor-runs.jsonl'

    def execution_path(self, task_id: str) -> Path:
        task_id_text = str(task_id or '').strip()
        if not task_id_text:
            raise ValueError('task_id is required')
        return self._resolve_under(self.executions_dir, f'{task_id_text}.md', label='task_id')

    def write_execution_artifact(self, task_id: str, content: str) -> Path:
        path = self.execution_path(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
        return path

    def write_plugin_file(self, name: str, content: str) -> Path:
        safe_name = str(name or '').strip()
        if not safe_name or '\x00' in safe_name:
            raise ValueError('plugin file name is required')
        safe_name = safe_name.replace('\\', '_').replace('/', '_')
        if safe_name in {'.', '..'}:
            raise ValueError('invalid plugin file name')
        path = self._resolve_under(self.plugins_dir, safe_name, label='plugin file name')
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
        return path

    def append_run_log(self, entry: dict) -> None:
        path = self.run_log_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open('a', encoding='utf-8') as f:
            f.write(json.dumps(entry, ensure_ascii=True) + '\n')

    def evidence_candidates(self, task: dict) -> list[Path]:
        slug = safe_slug(task.get('title'))
        candidates = [self.plugins_dir / f'{prefix}-{slug}.md' for prefix in EVIDENCE_PLUGIN_PREFIXES]
        task_id = str(task.get('task_id') or '').strip()
        if task_id:
            try:
                candidates.append(self.execution_path(task_id))
            except ValueError:
                pass
        return candidates

    def resolve_evidence(self, task: dict) -> str | None:
        """Return the first existing artifact path proving *task* was executed.

        Order: the task's ``artifact_path`` field, an ``Artifact: <path>`` line in
        its description, then the derived plugin and execution candidates.
        """
        recorded = task.get('artifact_path')
        if file_exists(recorded):
            return str(recorded)
        from_description = parse_artifact_path(task.get('description'))
        if file_exists(from_description):
            return str(from_description)
        for candidate in self.evidence_candidates(task):
            if file_exists(candidate):
                return str(candidate)
        return None

    @staticmethod
    def _resolve_under(base: Path, name: str, *, label: str) -> Path:
        base_resolved = base.resolve()
        path = (base_resolved / name).resolve(strict=False)
        try:
            path.relative_to(base_resolved)
        except ValueError as exc:
            raise ValueError(f'invalid {label}') from exc
        if path == base_resolved:
            raise ValueError(f'invalid {label}')
        return path
