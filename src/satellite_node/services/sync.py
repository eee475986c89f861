"""Periodic data synchronization with the hub.

The orchestrator asks each registered dataset source for records changed
since its checkpoint, pushes them to the hub in chunks, and advances the
checkpoint only once every chunk was acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from satellite_node.services.hub import HubClient
from satellite_node.services.outcomes import Err, Ok, Outcome
from satellite_node.services.state_store import StateStore

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint:"
LAST_SYNC_KEY = "checkpoint:last_sync"


class DatasetSource(Protocol):
    """Something that can list records of one dataset."""

    name: str

    async def collect(self, since: float | None) -> Sequence[Mapping[str, Any]]:
        """Return records changed after ``since`` (epoch seconds, None = all)."""
        ...


class CallableDatasetSource:
    """Adapt a blocking function into a :class:`DatasetSource`."""

    def __init__(
        self, name: str, func: Callable[[float | None], Iterable[Mapping[str, Any]]]
    ) -> None:
        self.name = name
        self._func = func

    async def collect(self, since: float | None) -> Sequence[Mapping[str, Any]]:
        return list(await asyncio.to_thread(self._func, since))


class DatasetStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class BatchStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class DatasetOutcome:
    dataset: str
    status: DatasetStatus
    records: int = 0
    chunks: int = 0
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "dataset": self.dataset,
            "status": self.status.value,
            "records": self.records,
            "chunks": self.chunks,
            "detail": self.detail,
        }


@dataclass
class SyncBatchResult:
    """Aggregate outcome of one orchestrator run."""

    outcomes: list[DatasetOutcome] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0
    dry_run: bool = False

    @property
    def status(self) -> BatchStatus:
        """``success`` when nothing failed, ``failure`` when nothing attempted succeeded."""
        statuses = [outcome.status for outcome in self.outcomes]
        failed = sum(1 for s in statuses if s in (DatasetStatus.FAILED, DatasetStatus.ERROR))
        succeeded = statuses.count(DatasetStatus.SUCCESS)
        if failed == 0:
            return BatchStatus.SUCCESS
        if succeeded == 0:
            return BatchStatus.FAILURE
        return BatchStatus.PARTIAL

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "datasets": [outcome.as_dict() for outcome in self.outcomes],
        }


def chunked(records: Sequence[Any], size: int) -> list[Sequence[Any]]:
    size = max(1, size)
    return [records[index:index + size] for index in range(0, len(records), size)]


class SyncOrchestrator:
    """Fan out to dataset sources and classify the batch result."""

    def __init__(
        self,
        hub: HubClient,
        store: StateStore,
        sources: Iterable[DatasetSource] = (),
        *,
        batch_size: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hub = hub
        self.store = store
        self.batch_size = batch_size
        self._clock = clock
        self._sources: dict[str, DatasetSource] = {}
        for source in sources:
            self.add_source(source)

    @property
    def datasets(self) -> list[str]:
        return list(self._sources)

    def add_source(self, source: DatasetSource) -> None:
        if source.name in self._sources:
            raise ValueError(f"Dataset {source.name!r} is already registered")
        self._sources[source.name] = source

    def checkpoint(self, dataset: str) -> float | None:
        return self.store.get_timestamp(f"{CHECKPOINT_PREFIX}{dataset}")

    async def run(self, dataset: str | None = None, *, dry_run: bool = False) -> SyncBatchResult:
        """Synchronize one dataset, or all of them.

        Raises:
            KeyError: If ``dataset`` names no registered source.
        """
        if dataset is not None and dataset not in self._sources:
            raise KeyError(f"Unknown dataset: {dataset}")

        names = [dataset] if dataset is not None else list(self._sources)
        result = SyncBatchResult(started_at=self._clock(), dry_run=dry_run)
        for name in names:
            result.outcomes.append(await self._sync_dataset(self._sources[name], dry_run))
        result.finished_at = self._clock()

        if not dry_run and any(o.status is DatasetStatus.SUCCESS for o in result.outcomes):
            await asyncio.to_thread(self.store.advance, LAST_SYNC_KEY, result.finished_at)

        logger.info(
            "Sync run finished with %s (%s)",
            result.status.value,
            ", ".join(f"{o.dataset}={o.status.value}" for o in result.outcomes) or "no datasets",
        )
        return result

    async def _collect(self, source: DatasetSource, since: float | None) -> Outcome:
        try:
            return Ok(list(await source.collect(since)))
        except Exception as exc:
            logger.error("Collecting dataset %s failed: %s", source.name, exc, exc_info=True)
            return Err(str(exc) or exc.__class__.__name__)

    async def _sync_dataset(self, source: DatasetSource, dry_run: bool) -> DatasetOutcome:
        collected_at = self._clock()
        since = await asyncio.to_thread(self.checkpoint, source.name)
        collected = await self._collect(source, since)
        if isinstance(collected, Err):
            return DatasetOutcome(source.name, DatasetStatus.ERROR, detail=collected.reason)

        records: list[Mapping[str, Any]] = collected.value
        if not records:
            return DatasetOutcome(source.name, DatasetStatus.SKIPPED, detail="no records")

        chunks = chunked(records, self.batch_size)
        if dry_run:
            return DatasetOutcome(
                source.name, DatasetStatus.SKIPPED, len(records), len(chunks), "dry run"
            )

        for index, chunk in enumerate(chunks, start=1):
            if not await self.hub.sync_data(chunk, source.name):
                return DatasetOutcome(
                    source.name,
                    DatasetStatus.FAILED,
                    len(records),
                    index - 1,
                    f"hub did not acknowledge chunk {index}/{len(chunks)}",
                )

        await asyncio.to_thread(
            self.store.advance, f"{CHECKPOINT_PREFIX}{source.name}", collected_at
        )
        return DatasetOutcome(source.name, DatasetStatus.SUCCESS, len(records), len(chunks))
