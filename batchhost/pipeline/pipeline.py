from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Union

from batchhost.core.errors import ConfigError
from batchhost.core.worker_config import WorkerConfig


@dataclass(frozen=True)
class MapStage:
    name: str
    fn: Callable[[Any], Any]


@dataclass(frozen=True)
class HandlerStage:
    """Items are cut into batches and sent to ``parallelism`` handler processes."""

    name: str
    config: WorkerConfig
    parallelism: int


Stage = Union[MapStage, HandlerStage]


class Pipeline:
    """
    A linear, in-memory pipeline: one item source followed by stages.

    Builders return a new Pipeline, so a partially built pipeline can be
    reused as the prefix of several jobs.
    """

    def __init__(self, source: Iterable[Any], stages: tuple[Stage, ...] = ()) -> None:
        self.source = source
        self.stages = stages

    @classmethod
    def from_items(cls, items: Iterable[Any]) -> "Pipeline":
        return cls(list(items))

    def map(self, fn: Callable[[Any], Any], *, name: str | None = None) -> "Pipeline":
        stage = MapStage(name=name or f"map-{len(self.stages) + 1}", fn=fn)
        return Pipeline(self.source, self.stages + (stage,))

    def map_using_handler_batch(
        self,
        config: WorkerConfig,
        *,
        parallelism: int = 1,
        name: str | None = None,
    ) -> "Pipeline":
        if parallelism < 1:
            raise ConfigError(
                code="invalid_parallelism",
                message="Handler stage parallelism must be at least 1",
                detail=str(parallelism),
            )
        stage = HandlerStage(
            name=name or f"handler-{len(self.stages) + 1}",
            config=config,
            parallelism=parallelism,
        )
        return Pipeline(self.source, self.stages + (stage,))
