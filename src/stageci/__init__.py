from .errors import ArtifactNotFound, ExpansionError, JobFailure, SchemaError
from .model import PipelineDocument, TriggerContext
from .parser import load_pipeline, parse_pipeline
from .runner import plan_pipeline, run_pipeline, start_pipeline

__all__ = [
    "ArtifactNotFound",
    "ExpansionError",
    "JobFailure",
    "SchemaError",
    "PipelineDocument",
    "TriggerContext",
    "load_pipeline",
    "parse_pipeline",
    "plan_pipeline",
    "run_pipeline",
    "start_pipeline",
]
