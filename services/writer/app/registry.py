from typing import Dict, Iterable, List, Optional, Sequence

import structlog
from shared.schemas import ValueBatch

from app.core.exceptions import WriteError
from app.core.settings import TargetSettings
from app.pipeline import WritePipeline

logger = structlog.get_logger()


class WriterRegistry:
    """
    Every configured target, each behind its own pipeline.

    A batch is offered to all targets; one target failing does not stop
    the others. Nothing is retried here; redelivery is up to the caller.
    """

    def __init__(self, pipelines: Iterable[WritePipeline]):
        self._pipelines: Dict[str, WritePipeline] = {}
        for pipeline in pipelines:
            if pipeline.name in self._pipelines:
                raise ValueError(f"duplicate write target {pipeline.name!r}")
            self._pipelines[pipeline.name] = pipeline
            logger.info("write_target_registered", target=pipeline.name)

    @classmethod
    def from_settings(cls, targets: Sequence[TargetSettings]) -> "WriterRegistry":
        return cls(WritePipeline.from_settings(target) for target in targets)

    @property
    def targets(self) -> List[str]:
        return list(self._pipelines)

    def get(self, name: str) -> Optional[WritePipeline]:
        return self._pipelines.get(name)

    def write(self, batch: ValueBatch, rates: Sequence[Optional[float]]) -> bool:
        """True when every target accepted the batch."""
        ok = True
        for name, pipeline in self._pipelines.items():
            try:
                pipeline.write(batch, rates)
            except WriteError as e:
                # Already logged with full context by the pipeline.
                logger.warning("write_target_failed", target=name, error_type=type(e).__name__)
                ok = False
        return ok

    def close(self) -> None:
        for name, pipeline in self._pipelines.items():
            pipeline.close()
            logger.info("write_target_closed", target=name)
