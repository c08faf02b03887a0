# trigger.py
from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable, List

from .model import PipelineDefinition, TriggerEvent


def _patterns_of(target: PipelineDefinition | str | Iterable[str]) -> List[str]:
    if isinstance(target, PipelineDefinition):
        return list(target.trigger_patterns)
    if isinstance(target, str):
        return [target]
    return list(target)


def evaluate(target: PipelineDefinition | str | Iterable[str], event: TriggerEvent) -> bool:
    """
    True iff the event is a tag push whose name matches one of the glob patterns.

    Branch pushes never trigger, whatever their name. A mismatch is not an
    error: the pipeline simply does not start.
    """
    if not event.is_tag:
        return False
    return any(fnmatchcase(event.ref_name, p) for p in _patterns_of(target))


def triggered(definitions: Iterable[PipelineDefinition], event: TriggerEvent) -> List[PipelineDefinition]:
    """Definitions fired by this event, in declared order. They are not mutually exclusive."""
    return [d for d in definitions if evaluate(d, event)]
