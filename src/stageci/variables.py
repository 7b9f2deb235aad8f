# variables.py
from __future__ import annotations

from pathlib import Path
from string import Template
from typing import TYPE_CHECKING, Dict, Mapping, Optional

if TYPE_CHECKING:
    from .model import ExpandedJob, TriggerContext


def expand(text: str, variables: Mapping[str, str]) -> str:
    """
    Interpolate $NAME and ${NAME}. Unknown names are left untouched so a
    later layer (the job's shell) still gets a chance to resolve them.
    """
    return Template(str(text)).safe_substitute(variables)


def predefined_variables(
    ctx: TriggerContext,
    *,
    job_name: Optional[str] = None,
    stage: Optional[str] = None,
    project_dir: str | Path | None = None,
    image: Optional[str] = None,
) -> Dict[str, str]:
    """Variables the engine provides to every job (both current and legacy names)."""
    out: Dict[str, str] = {
        "CI": "true",
        "CI_COMMIT_REF_NAME": ctx.ref_name,
        "CI_BUILD_REF_NAME": ctx.ref_name,
        "CI_PIPELINE_SOURCE": "push",
    }
    if ctx.ref_kind.value == "tag":
        out["CI_COMMIT_TAG"] = ctx.ref_name
        out["CI_BUILD_TAG"] = ctx.ref_name
    if job_name is not None:
        out["CI_JOB_NAME"] = job_name
        out["CI_BUILD_NAME"] = job_name
    if stage is not None:
        out["CI_JOB_STAGE"] = stage
        out["CI_BUILD_STAGE"] = stage
    if project_dir is not None:
        out["CI_PROJECT_DIR"] = str(Path(project_dir).resolve())
    if image:
        out["CI_JOB_IMAGE"] = image
    return out


def job_variables(
    job: ExpandedJob,
    ctx: TriggerContext,
    *,
    project_dir: str | Path | None = None,
) -> Dict[str, str]:
    """
    Full variable set for one job run.

    Declared variables are expanded once against the predefined ones
    (e.g. CARGO_HOME: $CI_PROJECT_DIR/cargo) and win over them on conflict.
    """
    predefined = predefined_variables(
        ctx,
        job_name=job.name,
        stage=job.stage,
        project_dir=project_dir,
        image=job.image,
    )
    out = dict(predefined)
    for k, v in job.variables.items():
        out[k] = expand(v, predefined)
    return out
