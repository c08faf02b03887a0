# Import the orchestrator (which loads the relci.matrix submodule) before the
# DSL so that the public `matrix` name is the DSL function, not the submodule.
from .orchestrator import Orchestrator
from .dsl import (
    CARGO_CACHES,
    CARGO_INDEX,
    CARGO_REGISTRY,
    CARGO_TARGET,
    TemplateBuilder,
    build,
    cache_restore,
    cache_save,
    caches,
    checkout,
    matrix,
    pipeline,
    sh,
    template,
)
from .model import CacheClass, PipelineDefinition, TriggerEvent

__all__ = [
    "sh", "checkout", "cache_restore", "cache_save", "caches", "template", "pipeline",
    "matrix", "build", "TemplateBuilder",
    "CARGO_REGISTRY", "CARGO_INDEX", "CARGO_TARGET", "CARGO_CACHES",
    "CacheClass", "PipelineDefinition", "TriggerEvent", "Orchestrator",
]
