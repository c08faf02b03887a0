# matrix.py
from __future__ import annotations

from itertools import product
from typing import Dict, Iterator, List

from .model import JobInstance, JobTemplate, PipelineDefinition, TriggerEvent


def _combinations(template: JobTemplate) -> Iterator[Dict[str, str]]:
    """
    Yield one parameter set per matrix cell.

    The platform is always the first axis; extra axes are crossed in declared
    order, so expansion order is reproducible.
    """
    axes = [(k, [str(v) for v in vals]) for k, vals in template.axes.items()]
    for k, vals in axes:
        if not vals:
            raise ValueError(f"Matrix axis '{k}' on platform '{template.platform_id}' has no values")

    names = [k for k, _ in axes]
    for values in product(*[vals for _, vals in axes]):
        params = {"platform": template.platform_id}
        params.update(zip(names, values))
        yield params


def _job_id(definition: PipelineDefinition, params: Dict[str, str]) -> str:
    jid = f"{definition.name}/{params['platform']}"
    for k, v in params.items():
        if k != "platform":
            jid += f"-{v}"
    return jid


def expand(definition: PipelineDefinition, event: TriggerEvent) -> List[JobInstance]:
    """
    Materialize every job template of a definition for one event.

    Deterministic and side-effect free: the same (definition, event) always
    gives the same job ids in the same order.
    """
    jobs: List[JobInstance] = []
    for template in definition.job_templates:
        for params in _combinations(template):
            jobs.append(
                JobInstance(
                    job_id=_job_id(definition, params),
                    pipeline=definition.name,
                    platform_id=template.platform_id,
                    template=template,
                    event=event,
                    repository=definition.repository,
                    params=params,
                )
            )

    ids = [j.job_id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ValueError(f"Duplicate job ids found: {dupes}")
    return jobs
