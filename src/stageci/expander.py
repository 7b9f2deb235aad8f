# expander.py
from __future__ import annotations

from typing import Dict, List

from .errors import ExpansionError
from .model import ExpandedJob, JobSpec, PipelineDocument

IMAGE_AXIS = "image"


def matrix_job_name(job_name: str, value: str) -> str:
    return f"{job_name}: [{value}]"


def expand_job(spec: JobSpec) -> List[ExpandedJob]:
    """
    One ExpandedJob per matrix axis value, or exactly one when the job has
    no matrix.

    An `image` axis selects the job's image; any other axis is exposed to
    the job as a variable named after the axis.
    """
    axis = spec.matrix
    if axis is None:
        return [ExpandedJob(name=spec.name, spec=spec, image=spec.image, variables=dict(spec.variables))]

    if not axis.values:
        raise ExpansionError(job=spec.name, message=f"matrix axis '{axis.name}' is empty")

    out: List[ExpandedJob] = []
    for value in axis.values:
        variables = dict(spec.variables)
        image = spec.image
        if axis.name == IMAGE_AXIS:
            image = value
        else:
            variables[axis.name] = value
        out.append(
            ExpandedJob(
                name=matrix_job_name(spec.name, value),
                spec=spec,
                axis_value=value,
                image=image,
                variables=variables,
            )
        )
    return out


def expand_pipeline(doc: PipelineDocument) -> List[ExpandedJob]:
    """Expand every job in document order; names must stay unique across the run."""
    jobs: List[ExpandedJob] = []
    seen: Dict[str, ExpandedJob] = {}
    for spec in doc.jobs.values():
        for j in expand_job(spec):
            if j.name in seen:
                raise ExpansionError(
                    job=spec.name,
                    message=f"expanded name '{j.name}' collides with job '{seen[j.name].spec.name}'",
                )
            seen[j.name] = j
            jobs.append(j)
    return jobs
