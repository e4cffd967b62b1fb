from .guardrail import GuardrailService, default_checks
from .intake import IntakeRequest, IntakeService
from .sweeper import SweeperService, format_summary
from .worker import ExecutorPlugin, PluginContext, PluginResult, WorkerService

__all__ = [
    'ExecutorPlugin',
    'GuardrailService',
    'IntakeRequest',
    'IntakeService',
    'PluginContext',
    'PluginResult',
    'SweeperService',
    'WorkerService',
    'default_checks',
    'format_summary',
]
