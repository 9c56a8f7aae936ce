"""Job pipeline: queue, ledger, fallback chain and consumer."""

from storyforge.pipeline.factory import Pipeline, build_pipeline, open_pipeline

__all__ = ["Pipeline", "build_pipeline", "open_pipeline"]
