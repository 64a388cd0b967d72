from .dsl import job, sh, uses, checkout, require_tools, matrix, trigger, pipeline, wf, JobBuilder, build
from .coordinator import plan_pipeline, run_pipeline
from .context import CancelToken, RunContext
from .errors import ActionFailure, CIError, ConfigurationError, InfrastructureFailure
from .loader import load_pipeline
from .matrix import expand_matrix, instantiate_job_runs
from .model import Job, JobRunResult, MatrixSpec, Pipeline, PipelineRunResult, Status, Step, TriggerEvent

__all__ = [
    "job", "sh", "uses", "checkout", "require_tools", "matrix", "trigger", "pipeline", "wf",
    "JobBuilder", "build",
    "plan_pipeline", "run_pipeline", "CancelToken", "RunContext",
    "ActionFailure", "CIError", "ConfigurationError", "InfrastructureFailure",
    "load_pipeline", "expand_matrix", "instantiate_job_runs",
    "Job", "JobRunResult", "MatrixSpec", "Pipeline", "PipelineRunResult", "Status", "Step", "TriggerEvent",
]
