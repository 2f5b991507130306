from .config import EngineConfig, load_config
from .errors import ConditionError, ExecutionError, JobgraphError, UndefinedReference, ValidationError
from .loader import load_workflow, load_workflow_text, parse_workflow
from .model import EventKind, Job, JobInstance, RunState, Step, TriggerContext, WorkflowDefinition
from .report import RunReport, RunStatus
from .runner import Scheduler, run_workflow

__version__ = "0.1.0"

__all__ = [
    "EngineConfig", "load_config",
    "JobgraphError", "ValidationError", "ConditionError", "UndefinedReference", "ExecutionError",
    "load_workflow", "load_workflow_text", "parse_workflow",
    "EventKind", "Job", "JobInstance", "RunState", "Step", "TriggerContext", "WorkflowDefinition",
    "RunReport", "RunStatus", "Scheduler", "run_workflow",
]
