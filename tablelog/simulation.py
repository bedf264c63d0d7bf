"""Commit-contention simulation.

Drives many concurrent writers against a real TableEngine, with storage
latencies sampled from a LatencyProfile and SimPy as the discrete-event
engine. Each writer:

1. Reads the head (read latency) and, for overwrites, picks a victim file
2. Does its work (runtime)
3. Stages and commits (put + cas latency) via TableEngine.commit()
4. On CommitConflictError: backs off, re-reads the head, retries
5. Aborts after max_retries conflicts, or immediately on NotFoundError /
   SchemaIncompatibleError

SimPy runs processes one at a time, so each commit() call is atomic in
simulated time; conflicts arise from writers whose base went stale while
they slept.

Key types:
- LatencyProfile: Storage latency distributions (frozen)
- SimulationConfig: Complete simulation configuration (frozen)
- WriterResult: Outcome of one simulated writer (frozen)
- Statistics: Aggregate counters, DataFrame / parquet export
- Simulation: Main runner
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generator, Optional

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import simpy
from tqdm import tqdm

from tablelog.engine import TableEngine
from tablelog.errors import CommitConflictError, NotFoundError, SchemaIncompatibleError
from tablelog.operation import AddFiles, Operation, RemoveFiles, SchemaChange
from tablelog.schema import AddColumn
from tablelog.storage import LatencyDistribution, StorageProvider
from tablelog.transaction import RetryPolicy, calculate_backoff_ms
from tablelog.workload import Workload, WriterSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LatencyProfile:
    """Latency distributions for the storage calls a commit makes."""
    read: LatencyDistribution
    put: LatencyDistribution
    cas: LatencyDistribution


@dataclass(frozen=True)
class SimulationConfig:
    """Complete simulation configuration.

    All components are fully constructed before simulation starts.
    """
    duration_ms: float
    seed: Optional[int]
    table: str
    storage: StorageProvider
    retry_policy: RetryPolicy
    latency: LatencyProfile
    workload: Workload


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WriterResult:
    """Outcome of one simulated writer."""
    txn_id: int
    kind: str
    status: str                  # "committed" or "aborted"
    abort_reason: Optional[str]  # "max_retries_exceeded", "validation_exception", "schema_incompatible"
    version: int                 # -1 if aborted
    submit_time_ms: float
    end_time_ms: float
    runtime_ms: float
    commit_latency_ms: float     # From end of runtime to commit/abort
    retries: int
    backoff_ms: float


_ARROW_SCHEMA = pa.schema([
    ("txn_id", pa.int64()),
    ("kind", pa.string()),
    ("status", pa.string()),
    ("abort_reason", pa.string()),
    ("version", pa.int64()),
    ("t_submit", pa.float64()),
    ("t_end", pa.float64()),
    ("runtime", pa.float64()),
    ("commit_latency", pa.float64()),
    ("total_latency", pa.float64()),
    ("n_retries", pa.int32()),
    ("backoff", pa.float64()),
])


def _result_to_row(r: WriterResult) -> dict:
    return {
        "txn_id": r.txn_id,
        "kind": r.kind,
        "status": r.status,
        "abort_reason": r.abort_reason,
        "version": r.version,
        "t_submit": round(r.submit_time_ms, 3),
        "t_end": round(r.end_time_ms, 3),
        "runtime": round(r.runtime_ms, 3),
        "commit_latency": round(r.commit_latency_ms, 3),
        "total_latency": round(r.end_time_ms - r.submit_time_ms, 3),
        "n_retries": r.retries,
        "backoff": round(r.backoff_ms, 3),
    }


class Statistics:
    """Collected simulation results."""

    def __init__(self):
        self.results: list[WriterResult] = []
        self.committed: int = 0
        self.aborted: int = 0
        self.total_retries: int = 0
        self.abort_reasons: dict[str, int] = {}

    def record(self, result: WriterResult) -> None:
        if result.status == "committed":
            self.committed += 1
        else:
            self.aborted += 1
            self.abort_reasons[result.abort_reason] = (
                self.abort_reasons.get(result.abort_reason, 0) + 1
            )
        self.total_retries += result.retries
        self.results.append(result)

    @property
    def total(self) -> int:
        return self.committed + self.aborted

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.committed / self.total

    def committed_versions(self) -> list[int]:
        return sorted(r.version for r in self.results if r.status == "committed")

    def _to_arrow(self) -> pa.Table:
        rows = [_result_to_row(r) for r in self.results]
        return pa.table(
            {f.name: pa.array([row[f.name] for row in rows], type=f.type)
             for f in _ARROW_SCHEMA},
            schema=_ARROW_SCHEMA,
        )

    def to_dataframe(self) -> pd.DataFrame:
        if not self.results:
            return pd.DataFrame(columns=_ARROW_SCHEMA.names)
        return self._to_arrow().to_pandas()

    def export_parquet(self, path: str) -> None:
        pq.write_table(self._to_arrow(), path, compression="snappy")

    def summary(self) -> dict:
        df = self.to_dataframe()
        committed = df[df["status"] == "committed"]
        return {
            "total": self.total,
            "committed": self.committed,
            "aborted": self.aborted,
            "success_rate": round(self.success_rate, 4),
            "total_retries": self.total_retries,
            "abort_reasons": dict(self.abort_reasons),
            "commit_latency_p50_ms": (
                float(np.percentile(committed["commit_latency"], 50)) if len(committed) else 0.0
            ),
            "commit_latency_p99_ms": (
                float(np.percentile(committed["commit_latency"], 99)) if len(committed) else 0.0
            ),
        }


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

class Simulation:
    """Main simulation runner.

    Usage:
        config = load_simulation_config("sim.toml")
        stats = Simulation(config).run()
        stats.export_parquet("results.parquet")
    """

    def __init__(self, config: SimulationConfig):
        self._config = config
        self._stats = Statistics()
        self._env = simpy.Environment()
        self._rng = np.random.RandomState(
            config.seed + 1 if config.seed is not None else None
        )
        self._engine = TableEngine(
            config.storage,
            retry_policy=config.retry_policy,
            clock=lambda: float(self._env.now),
            seed=config.seed,
        )

    @property
    def engine(self) -> TableEngine:
        return self._engine

    @property
    def stats(self) -> Statistics:
        return self._stats

    def run(self, progress: bool = False) -> Statistics:
        """Run simulation and return collected statistics."""
        table = self._config.table
        if not self._engine.catalog.exists(table):
            self._engine.create_table(table, [("id", "long", False), ("payload", "string")])

        self._env.process(self._run_workload())
        duration = self._config.duration_ms
        if not progress:
            self._env.run(until=duration)
            return self._stats

        with tqdm(total=duration, unit="ms", unit_scale=True, desc="Simulating") as pbar:
            step = max(duration / 100, 1.0)
            while self._env.now < duration:
                self._env.run(until=min(self._env.now + step, duration))
                pbar.update(self._env.now - pbar.n)
        return self._stats

    def _run_workload(self) -> Generator:
        """Generate writers and launch them as SimPy processes."""
        for delay, spec in self._config.workload.generate():
            yield self._env.timeout(delay)
            self._env.process(self._run_writer(spec))

    def _operations(self, spec: WriterSpec, victim: Optional[str]) -> tuple[Operation, ...]:
        if spec.kind == "schema_change":
            return (SchemaChange([AddColumn(spec.column_name, "long")]),)
        ops: list[Operation] = []
        if victim is not None:
            ops.append(RemoveFiles([victim]))
        ops.append(AddFiles(spec.new_files, {"id": "long", "payload": "string"}))
        return tuple(ops)

    def _run_writer(self, spec: WriterSpec) -> Generator:
        env = self._env
        cfg = self._config
        latency = cfg.latency
        policy = cfg.retry_policy
        submit = env.now

        yield env.timeout(latency.read.sample(self._rng))
        base = self._engine.resolve(cfg.table).current_version
        victim = None
        if spec.kind == "overwrite":
            files = sorted(self._engine.plan(cfg.table, version=base))
            if files:
                victim = files[int(self._rng.randint(len(files)))]
        operations = self._operations(spec, victim)

        yield env.timeout(spec.runtime_ms)
        commit_start = env.now

        retries = 0
        backoff_total = 0.0
        version = -1
        abort_reason = None
        while True:
            yield env.timeout(latency.put.sample(self._rng) + latency.cas.sample(self._rng))
            try:
                version = self._engine.commit(cfg.table, base, operations)
                break
            except CommitConflictError:
                if retries >= policy.max_retries:
                    abort_reason = "max_retries_exceeded"
                    break
                retries += 1
                backoff = calculate_backoff_ms(policy, retries, self._rng)
                if backoff > 0:
                    backoff_total += backoff
                    yield env.timeout(backoff)
                yield env.timeout(latency.read.sample(self._rng))
                base = self._engine.resolve(cfg.table).current_version
            except NotFoundError:
                abort_reason = "validation_exception"
                break
            except SchemaIncompatibleError:
                abort_reason = "schema_incompatible"
                break

        logger.debug(
            f"{env.now:.1f} TXN {spec.txn_id} {spec.kind} "
            f"{'committed v' + str(version) if abort_reason is None else 'aborted: ' + abort_reason} "
            f"after {retries} retries"
        )
        self._stats.record(WriterResult(
            txn_id=spec.txn_id,
            kind=spec.kind,
            status="committed" if abort_reason is None else "aborted",
            abort_reason=abort_reason,
            version=version,
            submit_time_ms=submit,
            end_time_ms=env.now,
            runtime_ms=spec.runtime_ms,
            commit_latency_ms=env.now - commit_start,
            retries=retries,
            backoff_ms=backoff_total,
        ))
