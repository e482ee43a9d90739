from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "EpicPipeline",
    "PipelineConfig",
    "PipelineEvent",
    "PipelineResult",
    "detect_progress",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .events import PipelineEvent
    from .executor import EpicPipeline, PipelineResult
    from .progress import detect_progress


def __getattr__(name: str):
    if name == "PipelineEvent":
        from .events import PipelineEvent

        return PipelineEvent
    if name == "PipelineConfig":
        from .config import PipelineConfig

        return PipelineConfig
    if name == "detect_progress":
        from .progress import detect_progress

        return detect_progress
    if name in {"EpicPipeline", "PipelineResult"}:
        from .executor import EpicPipeline, PipelineResult

        return {"EpicPipeline": EpicPipeline, "PipelineResult": PipelineResult}[name]
    raise AttributeError(f"module 'ouroboros' has no attribute {name!r}")
