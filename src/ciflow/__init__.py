from .dsl import cache, job, only_on, pipeline, setup, sh
from .errors import CacheError, CIError, ConfigError, InfrastructureFailure, MalformedTrigger
from .loader import load_workflow, parse_descriptor
from .model import Job, JobResult, PipelineConfig, RunResult, Step, StepResult
from .runner import CancelSignal, JobRunner
from .scheduler import PipelineScheduler, RunHandle
from .trigger import TriggerPolicy, evaluate

__all__ = [
    "sh", "setup", "cache", "job", "pipeline", "only_on",
    "CIError", "ConfigError", "MalformedTrigger", "CacheError", "InfrastructureFailure",
    "load_workflow", "parse_descriptor",
    "Job", "Step", "PipelineConfig", "JobResult", "StepResult", "RunResult",
    "CancelSignal", "JobRunner", "PipelineScheduler", "RunHandle",
    "TriggerPolicy", "evaluate",
]
