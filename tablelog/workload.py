"""Workload generator for the contention simulation.

The Workload produces an endless stream of (delay, WriterSpec) pairs:
the inter-arrival delay before the writer starts, and what it will do.

Writer kinds:
- append: add files_per_commit new files
- overwrite: replace one existing file with files_per_commit new files
- schema_change: add a nullable column
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generator, Optional

import numpy as np

from tablelog.storage import LatencyDistribution

WRITER_KINDS = ("append", "overwrite", "schema_change")


@dataclass(frozen=True)
class WorkloadConfig:
    """Immutable workload configuration."""
    inter_arrival: LatencyDistribution
    runtime: LatencyDistribution
    append_weight: float = 1.0
    overwrite_weight: float = 0.0
    schema_change_weight: float = 0.0
    files_per_commit: int = 1

    @property
    def weights(self) -> np.ndarray:
        raw = np.array([self.append_weight, self.overwrite_weight,
                        self.schema_change_weight], dtype=float)
        total = raw.sum()
        if total <= 0:
            raise ValueError("Operation weights must not all be zero")
        return raw / total


@dataclass(frozen=True)
class WriterSpec:
    """One simulated writer."""
    txn_id: int
    kind: str
    runtime_ms: float
    new_files: tuple[str, ...]
    column_name: Optional[str] = None


class Workload:
    """Seeded generator of simulated writers."""

    def __init__(self, config: WorkloadConfig, seed: Optional[int] = None):
        self._config = config
        self._seed = seed
        self._rng = np.random.RandomState(seed) if seed is not None else np.random.RandomState()

    @property
    def config(self) -> WorkloadConfig:
        return self._config

    @property
    def rng(self) -> np.random.RandomState:
        return self._rng

    def generate(self) -> Generator[tuple[float, WriterSpec], None, None]:
        """Yield (inter-arrival delay ms, writer) forever."""
        weights = self._config.weights
        txn_id = 0
        while True:
            delay = self._config.inter_arrival.sample(self._rng)
            kind = WRITER_KINDS[int(self._rng.choice(len(WRITER_KINDS), p=weights))]
            runtime = self._config.runtime.sample(self._rng)
            if kind == "schema_change":
                spec = WriterSpec(txn_id, kind, runtime, (), column_name=f"col_{txn_id}")
            else:
                files = tuple(
                    f"data/txn-{txn_id:06d}-{i}.parquet"
                    for i in range(self._config.files_per_commit)
                )
                spec = WriterSpec(txn_id, kind, runtime, files)
            yield delay, spec
            txn_id += 1
