# src/relci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import (
    CacheClass,
    CacheRestoreStep,
    CacheSaveStep,
    CheckoutStep,
    JobTemplate,
    PipelineDefinition,
    ShellStep,
    Step,
)

# ---------------------------------------------------------------------
# Well-known cache classes (cargo builds)
# ---------------------------------------------------------------------

CARGO_REGISTRY = CacheClass("cargo-registry", "~/.cargo/registry")
CARGO_INDEX = CacheClass("cargo-index", "~/.cargo/git")
CARGO_TARGET = CacheClass("cargo-build-target", "target")
CARGO_CACHES = [CARGO_REGISTRY, CARGO_INDEX, CARGO_TARGET]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    may_fail: bool = False,
    timeout: float | None = None,
) -> ShellStep:
    """Create a shell step."""
    return ShellStep(name=name, command=cmd, cwd=cwd, may_fail=may_fail, timeout=timeout)


def checkout(name: str = "checkout repo", *, submodules: bool = True, timeout: float | None = None) -> CheckoutStep:
    return CheckoutStep(name=name, submodules=submodules, timeout=timeout)


def cache_restore(cache_class: CacheClass, *, name: str | None = None) -> CacheRestoreStep:
    return CacheRestoreStep(name=name or f"cache {cache_class.name}", cache_class=cache_class)


def cache_save(cache_class: CacheClass, *, name: str | None = None) -> CacheSaveStep:
    return CacheSaveStep(name=name or f"save {cache_class.name}", cache_class=cache_class)


def caches(*classes: CacheClass) -> List[Step]:
    """One restore step per class, e.g. caches(*CARGO_CACHES)."""
    return [cache_restore(c) for c in classes]


def _cache_classes(steps: Sequence[Step]) -> List[CacheClass]:
    found: List[CacheClass] = []
    for s in steps:
        cc = getattr(s, "cache_class", None)
        if cc is not None and cc not in found:
            found.append(cc)
    return found


def _flatten(items: Iterable[Any]) -> List[Step]:
    out: List[Step] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            out.extend(_flatten(item))
        else:
            out.append(item)
    return out


# ---------------------------------------------------------------------
# Functional template helper
# ---------------------------------------------------------------------

def template(
    platform: str,
    *steps: Step | List[Step],  # allow: template("x", sh(...), caches(...))
    steps_list: Optional[List[Step]] = None,
    image: str | None = None,
    publish: Optional[list] = None,
    axes: Optional[Dict[str, List[str]]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(_flatten(steps))

    if not steps_final:
        raise ValueError(f"template({platform!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, ShellStep) and s.cwd is None else s
            for s in steps_final
        ]

    return JobTemplate(
        platform_id=platform,
        steps=steps_final,
        runner_image=image,
        cache_classes=_cache_classes(steps_final),
        publish_targets=list(publish or []),
        axes={k: [str(v) for v in vs] for k, vs in (axes or {}).items()},
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class TemplateBuilder:
    def __init__(self, platform: str):
        self.platform = platform
        self._image: str | None = None
        self._steps: list[Step] = []
        self._publish: list = []
        self._axes: dict[str, list[str]] = {}
        self._env: dict[str, str] = {}

    def runs_on(self, image: str | None):
        self._image = image
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, *, may_fail: bool = False,
                    timeout: float | None = None):
        self._steps.append(sh(name, run, cwd=cwd, may_fail=may_fail, timeout=timeout))
        return self

    def checkout(self, *, submodules: bool = True):
        self._steps.append(checkout(submodules=submodules))
        return self

    def restore_cache(self, *classes: CacheClass):
        self._steps.extend(caches(*classes))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_axis(self, key: str, values: Iterable[Any]):
        self._axes[key] = [str(v) for v in values]
        return self

    def publish_to(self, *targets):
        self._publish.extend(targets)
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Template '{self.platform}' has no steps")
        return template(
            self.platform,
            steps_list=self._steps,
            image=self._image,
            publish=self._publish,
            axes=self._axes,
            env=self._env,
        )


def build(platform: str) -> TemplateBuilder:
    """Convenience: build('ubuntu16').runs_on('ubuntu:16.04').define_step(...).build()"""
    return TemplateBuilder(platform)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    One parametrised builder, one template per parameter set.

    Example:
        matrix("platform", [("ubuntu16", "ubuntu:16.04"), ("ubuntu20.04", "ubuntu:20.04")]).jobs(
            lambda p: template(p[0], sh(...), image=p[1])
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobTemplate]) -> List[JobTemplate]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *templates: JobTemplate | List[JobTemplate],
    on_tags: Sequence[str] = ("20*",),
    repository: str | None = None,
) -> PipelineDefinition:
    """
    Pipeline definition helper:

        def pipelines():
            return [
                pipeline("release", template(...), on_tags=["20*"], repository="..."),
            ]
    """
    flat: List[JobTemplate] = []
    for t in templates:
        flat.extend(t if isinstance(t, list) else [t])
    if not flat:
        raise ValueError(f"pipeline({name!r}) must have at least one job template")
    if not on_tags:
        raise ValueError(f"pipeline({name!r}) needs at least one tag pattern")
    return PipelineDefinition(
        name=name,
        trigger_patterns=list(on_tags),
        job_templates=flat,
        repository=repository,
    )
