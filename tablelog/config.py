"""Configuration parsing and validation.

This module contains:
- load_engine_config() / build_engine(): engine from a TOML file
- load_simulation_config(): contention simulation from a TOML file
- validate_config(): collects errors and warnings before anything is built

Example:

    [storage]
    backend = "local"
    root = "warehouse"

    [retry]
    max_retries = 10
    backoff.enabled = true
    backoff.base_ms = 10.0
    backoff.multiplier = 2.0
    backoff.max_ms = 5000.0
    backoff.jitter = 0.1

    [simulation]
    duration_ms = 60000
    seed = 42
    table = "events"

    [simulation.latency]
    read.median_ms = 20.0
    read.sigma = 0.5
    put.median_ms = 30.0
    put.sigma = 0.5
    cas.median_ms = 25.0
    cas.sigma = 0.5

    [workload]
    inter_arrival.distribution = "exponential"
    inter_arrival.scale = 100.0
    runtime.mean = 500.0
    runtime.sigma = 0.5
    files_per_commit = 2
    operation_types.append = 0.8
    operation_types.overwrite = 0.15
    operation_types.schema_change = 0.05
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import tomllib

from tablelog.engine import TableEngine
from tablelog.simulation import LatencyProfile, SimulationConfig
from tablelog.storage import (
    FixedLatency,
    LatencyDistribution,
    LognormalLatency,
    StorageProvider,
    create_provider,
)
from tablelog.transaction import RetryPolicy
from tablelog.workload import Workload, WorkloadConfig

logger = logging.getLogger(__name__)

_VALID_BACKENDS = ("memory", "local")
_VALID_OPERATION_TYPES = {"append", "overwrite", "schema_change"}
_VALID_INTER_ARRIVAL = ("fixed", "exponential")


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


@dataclass(frozen=True)
class EngineConfig:
    """Everything needed to build a TableEngine."""
    storage: StorageProvider
    retry_policy: RetryPolicy


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def _read_toml(config_path: str) -> dict:
    with open(config_path, "rb") as f:
        raw = tomllib.load(f)

    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)
    return raw


def load_engine_config(config_path: str, *, read_only: bool = False) -> EngineConfig:
    """Load storage and retry settings from a TOML file."""
    raw = _read_toml(config_path)
    return engine_config_from_dict(raw, read_only=read_only)


def engine_config_from_dict(raw: dict, *, read_only: bool = False) -> EngineConfig:
    return EngineConfig(
        storage=_build_storage_provider(raw.get("storage", {}), read_only),
        retry_policy=_build_retry_policy(raw.get("retry", {})),
    )


def build_engine(config_path: str, *, read_only: bool = False,
                 seed: Optional[int] = None) -> TableEngine:
    """Construct a TableEngine from a TOML file."""
    cfg = load_engine_config(config_path, read_only=read_only)
    return TableEngine(cfg.storage, retry_policy=cfg.retry_policy, seed=seed)


def load_simulation_config(
    config_path: str,
    *,
    seed_override: int | None = None,
) -> SimulationConfig:
    """Load simulation configuration from TOML file.

    Args:
        config_path: Path to TOML configuration file.
        seed_override: If provided, overrides the seed in the config file.
    """
    raw = _read_toml(config_path)
    if seed_override is not None:
        raw.setdefault("simulation", {})["seed"] = seed_override
    return simulation_config_from_dict(raw)


def simulation_config_from_dict(raw: dict) -> SimulationConfig:
    errors, _ = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)

    engine_cfg = engine_config_from_dict(raw)
    sim_cfg = raw.get("simulation", {})
    seed = sim_cfg.get("seed")

    # Workload seed is derived from simulation seed
    wl_seed = (seed + 100) if seed is not None else None

    return SimulationConfig(
        duration_ms=sim_cfg.get("duration_ms", 60_000),
        seed=seed,
        table=sim_cfg.get("table", "events"),
        storage=engine_cfg.storage,
        retry_policy=engine_cfg.retry_policy,
        latency=_build_latency_profile(sim_cfg.get("latency", {})),
        workload=_build_workload(raw.get("workload", {}), wl_seed),
    )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _build_storage_provider(storage_cfg: dict, read_only: bool = False) -> StorageProvider:
    """Build StorageProvider from [storage] config section."""
    backend = storage_cfg.get("backend", "memory")
    return create_provider(backend, root=storage_cfg.get("root"), read_only=read_only)


def _build_retry_policy(retry_cfg: dict) -> RetryPolicy:
    """Build RetryPolicy from [retry] config section."""
    backoff = retry_cfg.get("backoff", {})
    return RetryPolicy(
        max_retries=retry_cfg.get("max_retries", 10),
        backoff_enabled=backoff.get("enabled", True),
        backoff_base_ms=backoff.get("base_ms", 10.0),
        backoff_multiplier=backoff.get("multiplier", 2.0),
        backoff_max_ms=backoff.get("max_ms", 5000.0),
        backoff_jitter=backoff.get("jitter", 0.1),
    )


def _build_lognormal(section: dict, default_median: float,
                     min_latency: float) -> LatencyDistribution:
    return LognormalLatency.from_median(
        median_ms=section.get("median_ms", default_median),
        sigma=section.get("sigma", 0.5),
        min_latency_ms=min_latency,
    )


def _build_latency_profile(latency_cfg: dict) -> LatencyProfile:
    """Build storage latencies from [simulation.latency]."""
    if latency_cfg.get("fixed_ms") is not None:
        fixed = FixedLatency(latency_cfg["fixed_ms"])
        return LatencyProfile(read=fixed, put=fixed, cas=fixed)
    min_latency = latency_cfg.get("min_latency_ms", 1.0)
    return LatencyProfile(
        read=_build_lognormal(latency_cfg.get("read", {}), 20.0, min_latency),
        put=_build_lognormal(latency_cfg.get("put", {}), 30.0, min_latency),
        cas=_build_lognormal(latency_cfg.get("cas", {}), 25.0, min_latency),
    )


def _build_inter_arrival(wl_cfg: dict) -> LatencyDistribution:
    ia_cfg = wl_cfg.get("inter_arrival", {})
    dist = ia_cfg.get("distribution", "exponential")
    if dist == "fixed":
        return FixedLatency(latency_ms=ia_cfg.get("value", 100.0))
    # For exponential inter-arrival, use lognormal approximation
    # scale is the median inter-arrival time
    return LognormalLatency.from_median(
        median_ms=ia_cfg.get("scale", 100.0),
        sigma=ia_cfg.get("sigma", 0.5),
    )


def _build_runtime(wl_cfg: dict) -> LatencyDistribution:
    rt_cfg = wl_cfg.get("runtime", {})
    return LognormalLatency.from_median(
        median_ms=rt_cfg.get("mean", 500.0),
        sigma=rt_cfg.get("sigma", 0.5),
        min_latency_ms=rt_cfg.get("min", 1.0),
    )


def _build_workload(wl_cfg: dict, seed: int | None) -> Workload:
    """Build Workload from [workload] config section."""
    op_types = wl_cfg.get("operation_types", {})
    config = WorkloadConfig(
        inter_arrival=_build_inter_arrival(wl_cfg),
        runtime=_build_runtime(wl_cfg),
        append_weight=op_types.get("append", 1.0),
        overwrite_weight=op_types.get("overwrite", 0.0),
        schema_change_weight=op_types.get("schema_change", 0.0),
        files_per_commit=wl_cfg.get("files_per_commit", 1),
    )
    return Workload(config, seed=seed)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_config(config: dict) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors/warnings.

    Returns:
        (errors, warnings) where:
        - errors: List of fatal configuration errors
        - warnings: List of non-fatal warnings
    """
    errors = []
    warnings = []

    # Storage section
    storage = config.get("storage", {})
    backend = storage.get("backend", "memory")
    if backend not in _VALID_BACKENDS:
        errors.append(f"storage.backend must be one of {list(_VALID_BACKENDS)}, got '{backend}'")
    if backend == "local" and not storage.get("root"):
        errors.append("storage.root required for local backend")
    if backend == "memory" and storage.get("root"):
        warnings.append("storage.root is ignored by the memory backend")

    # Retry section
    retry = config.get("retry", {})
    max_retries = retry.get("max_retries", 10)
    if not isinstance(max_retries, int) or max_retries < 0:
        errors.append(f"retry.max_retries must be an integer >= 0, got {max_retries!r}")
    backoff = retry.get("backoff", {})
    base_ms = backoff.get("base_ms", 10.0)
    max_ms = backoff.get("max_ms", 5000.0)
    if base_ms < 0:
        errors.append(f"retry.backoff.base_ms must be >= 0, got {base_ms}")
    if backoff.get("multiplier", 2.0) < 1.0:
        errors.append(f"retry.backoff.multiplier must be >= 1, got {backoff['multiplier']}")
    if max_ms < base_ms:
        errors.append(f"retry.backoff.max_ms ({max_ms}) must be >= base_ms ({base_ms})")
    jitter = backoff.get("jitter", 0.1)
    if not 0.0 <= jitter <= 1.0:
        errors.append(f"retry.backoff.jitter must be in [0, 1], got {jitter}")
    if max_retries == 0 and backoff.get("enabled", True):
        warnings.append("retry.max_retries = 0 makes backoff settings unused")

    # Simulation section
    sim = config.get("simulation", {})
    duration = sim.get("duration_ms", 60_000)
    if duration <= 0:
        errors.append(f"simulation.duration_ms must be > 0, got {duration}")
    latency = sim.get("latency", {})
    for op in ("read", "put", "cas"):
        section = latency.get(op, {})
        median = section.get("median_ms")
        if median is not None and median <= 0:
            errors.append(f"simulation.latency.{op}.median_ms must be > 0, got {median}")
        sigma = section.get("sigma")
        if sigma is not None and sigma < 0:
            errors.append(f"simulation.latency.{op}.sigma must be >= 0, got {sigma}")

    # Workload section
    wl = config.get("workload", {})
    ia = wl.get("inter_arrival", {})
    dist = ia.get("distribution", "exponential")
    if dist not in _VALID_INTER_ARRIVAL:
        errors.append(
            f"workload.inter_arrival.distribution must be one of {list(_VALID_INTER_ARRIVAL)}, got '{dist}'"
        )
    elif dist == "fixed" and "value" not in ia:
        errors.append("workload.inter_arrival.value required for fixed distribution")
    elif dist == "exponential" and ia.get("scale", 100.0) <= 0:
        errors.append(f"workload.inter_arrival.scale must be > 0, got {ia['scale']}")

    runtime = wl.get("runtime", {})
    mean = runtime.get("mean")
    if mean is not None and mean <= 0:
        errors.append(f"workload.runtime.mean must be > 0, got {mean}")
    min_runtime = runtime.get("min", 0)
    if min_runtime < 0:
        errors.append(f"workload.runtime.min must be >= 0, got {min_runtime}")
    if mean is not None and min_runtime > mean:
        warnings.append(
            f"workload.runtime.min ({min_runtime}) > mean ({mean}); transactions will cluster at minimum"
        )

    files_per_commit = wl.get("files_per_commit", 1)
    if not isinstance(files_per_commit, int) or files_per_commit < 1:
        errors.append(f"workload.files_per_commit must be an integer >= 1, got {files_per_commit!r}")

    op_types = wl.get("operation_types", {})
    for op_name, weight in op_types.items():
        if op_name not in _VALID_OPERATION_TYPES:
            errors.append(
                f"Unknown operation type: '{op_name}'. Valid types: {sorted(_VALID_OPERATION_TYPES)}"
            )
        elif not isinstance(weight, (int, float)):
            errors.append(f"operation_types.{op_name} must be a number, got {type(weight).__name__}")
        elif weight < 0:
            errors.append(f"operation_types.{op_name} must be >= 0, got {weight}")
    if op_types:
        weight_sum = sum(w for w in op_types.values() if isinstance(w, (int, float)))
        if weight_sum <= 0:
            errors.append("operation_types weights must not all be zero")
        elif abs(weight_sum - 1.0) > 0.01:
            warnings.append(f"operation_types weights sum to {weight_sum:.3f}, will be normalized to 1.0")

    return errors, warnings
