from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rigcalib.cam.lens import LENS_MODELS
from rigcalib.errors import ConfigurationError

SCHEMA_VERSION = "rigcalib.config.v0"

_LOSSES = ("linear", "huber", "soft_l1", "cauchy", "arctan")
_LINEAR_SOLVERS = ("exact", "lsmr")


@dataclass(frozen=True)
class SolverOptions:
    max_num_iterations: int = 100
    loss: str = "linear"
    loss_scale: float = 1.0
    function_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-10
    x_scale: str | float = "jac"
    linear_solver: str = "exact"


@dataclass(frozen=True)
class RetryPolicy:
    """
    What the background loop does after a failed round.

    `max_consecutive_failures=None` retries forever. Otherwise the loop ends once
    that many rounds in a row have failed.
    """

    max_consecutive_failures: int | None = None
    backoff_s: float = 0.1
    backoff_factor: float = 2.0
    max_backoff_s: float = 5.0

    def delay(self, consecutive_failures: int) -> float:
        if consecutive_failures <= 0 or self.backoff_s <= 0.0:
            return 0.0
        d = self.backoff_s * self.backoff_factor ** (consecutive_failures - 1)
        return float(min(d, self.max_backoff_s))

    def exhausted(self, consecutive_failures: int) -> bool:
        if self.max_consecutive_failures is None:
            return False
        return consecutive_failures >= self.max_consecutive_failures


@dataclass(frozen=True)
class CalibratorConfig:
    schema_version: str = SCHEMA_VERSION
    lens: str = "fov"
    solver: SolverOptions = field(default_factory=SolverOptions)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    idle_interval_s: float = 0.01
    segment_size: int = 64


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


def load_calibrator_config(path: Path) -> CalibratorConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_calibrator_config(data)


def _parse_solver(solver: dict[str, Any]) -> SolverOptions:
    defaults = SolverOptions()

    max_iters = int(solver.get("max_num_iterations", defaults.max_num_iterations))
    _require(max_iters >= 1, "solver.max_num_iterations must be >= 1")

    loss = str(solver.get("loss", defaults.loss))
    _require(loss in _LOSSES, f"solver.loss must be one of {list(_LOSSES)}")
    loss_scale = float(solver.get("loss_scale", defaults.loss_scale))
    _require(loss_scale > 0.0, "solver.loss_scale must be > 0")

    tols = {}
    for name in ("function_tolerance", "parameter_tolerance", "gradient_tolerance"):
        tols[name] = float(solver.get(name, getattr(defaults, name)))
        _require(tols[name] >= 0.0, f"solver.{name} must be >= 0")
    _require(any(t > 0.0 for t in tols.values()), "at least one solver tolerance must be > 0")

    x_scale_raw = solver.get("x_scale", defaults.x_scale)
    if isinstance(x_scale_raw, str):
        _require(x_scale_raw == "jac", "solver.x_scale must be 'jac' or a positive number")
        x_scale: str | float = x_scale_raw
    else:
        x_scale = float(x_scale_raw)
        _require(x_scale > 0.0, "solver.x_scale must be 'jac' or a positive number")

    linear_solver = str(solver.get("linear_solver", defaults.linear_solver))
    _require(linear_solver in _LINEAR_SOLVERS, f"solver.linear_solver must be one of {list(_LINEAR_SOLVERS)}")

    return SolverOptions(
        max_num_iterations=max_iters,
        loss=loss,
        loss_scale=loss_scale,
        x_scale=x_scale,
        linear_solver=linear_solver,
        **tols,
    )


def _parse_retry(retry: dict[str, Any]) -> RetryPolicy:
    defaults = RetryPolicy()
    max_fail_raw = retry.get("max_consecutive_failures", defaults.max_consecutive_failures)
    max_fail = None if max_fail_raw is None else int(max_fail_raw)
    _require(max_fail is None or max_fail >= 1, "retry.max_consecutive_failures must be null or >= 1")

    backoff_s = float(retry.get("backoff_s", defaults.backoff_s))
    backoff_factor = float(retry.get("backoff_factor", defaults.backoff_factor))
    max_backoff_s = float(retry.get("max_backoff_s", defaults.max_backoff_s))
    _require(backoff_s >= 0.0, "retry.backoff_s must be >= 0")
    _require(backoff_factor >= 1.0, "retry.backoff_factor must be >= 1")
    _require(max_backoff_s >= backoff_s, "retry.max_backoff_s must be >= retry.backoff_s")
    return RetryPolicy(
        max_consecutive_failures=max_fail,
        backoff_s=backoff_s,
        backoff_factor=backoff_factor,
        max_backoff_s=max_backoff_s,
    )


def parse_calibrator_config(data: dict[str, Any]) -> CalibratorConfig:
    schema_version = data.get("schema_version", SCHEMA_VERSION)
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    lens = str(data.get("lens", "fov"))
    _require(lens in LENS_MODELS, f"lens must be one of {sorted(LENS_MODELS)}")
    solver = data.get("solver", {})
    retry = data.get("retry", {})
    _require(isinstance(solver, dict), "solver must be an object")
    _require(isinstance(retry, dict), "retry must be an object")

    idle = float(data.get("idle_interval_s", 0.01))
    _require(idle >= 0.0, "idle_interval_s must be >= 0")
    segment_size = int(data.get("segment_size", 64))
    _require(segment_size >= 1, "segment_size must be >= 1")

    return CalibratorConfig(
        schema_version=schema_version,
        lens=lens,
        solver=_parse_solver(solver),
        retry=_parse_retry(retry),
        idle_interval_s=idle,
        segment_size=segment_size,
    )


def calibrator_config_to_dict(cfg: CalibratorConfig) -> dict[str, Any]:
    s = cfg.solver
    r = cfg.retry
    return {
        "schema_version": cfg.schema_version,
        "lens": cfg.lens,
        "solver": {
            "max_num_iterations": s.max_num_iterations,
            "loss": s.loss,
            "loss_scale": s.loss_scale,
            "function_tolerance": s.function_tolerance,
            "parameter_tolerance": s.parameter_tolerance,
            "gradient_tolerance": s.gradient_tolerance,
            "x_scale": s.x_scale,
            "linear_solver": s.linear_solver,
        },
        "retry": {
            "max_consecutive_failures": r.max_consecutive_failures,
            "backoff_s": r.backoff_s,
            "backoff_factor": r.backoff_factor,
            "max_backoff_s": r.max_backoff_s,
        },
        "idle_interval_s": cfg.idle_interval_s,
        "segment_size": cfg.segment_size,
    }
