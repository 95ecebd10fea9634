from .dsl import cache, job, matrix, sh, target, template, wf
from .model import Job, JobState, JobTemplate, Step, TargetDefinition
from .runner import load_workflow, run_dag
from .trigger import TriggerContext

__all__ = [
    "cache",
    "job",
    "matrix",
    "sh",
    "target",
    "template",
    "wf",
    "Job",
    "JobState",
    "JobTemplate",
    "Step",
    "TargetDefinition",
    "load_workflow",
    "run_dag",
    "TriggerContext",
]
