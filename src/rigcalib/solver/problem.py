from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Hashable, Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import csr_matrix

from rigcalib.config import SolverOptions
from rigcalib.core.manifold import SE3Manifold
from rigcalib.errors import NumericalFailure

logger = logging.getLogger(__name__)


class CostFunction(ABC):
    """
    A residual term over one or more parameter blocks.

    Jacobians are returned in ambient coordinates, one (num_residuals, block_size)
    matrix per parameter block. The problem chains them with the block manifold.
    """

    num_residuals: int = 0
    parameter_block_sizes: tuple[int, ...] = ()

    @abstractmethod
    def evaluate(
        self, parameters: Sequence[np.ndarray], jacobians: bool = False
    ) -> tuple[np.ndarray, list[np.ndarray] | None]:
        ...


@dataclass
class ParameterBlock:
    key: Hashable
    values: np.ndarray  # live storage, updated in place by solve()
    manifold: SE3Manifold | None = None
    constant: bool = False

    @property
    def tangent_size(self) -> int:
        return self.manifold.tangent_size if self.manifold is not None else int(self.values.size)

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        if self.manifold is None:
            return x + delta
        return self.manifold.plus(x, delta)


@dataclass(frozen=True)
class ResidualBlock:
    cost: CostFunction
    keys: tuple[Hashable, ...]


class Problem:
    """
    Parameter blocks keyed by hashable ids, plus residual blocks over them.

    Blocks are registered with the array that holds their current value. The
    array is never copied: solve() writes the optimized values back into it.
    """

    def __init__(self) -> None:
        self._blocks: dict[Hashable, ParameterBlock] = {}
        self._residual_blocks: list[ResidualBlock] = []

    def add_parameter_block(self, key: Hashable, values: np.ndarray, manifold: SE3Manifold | None = None) -> None:
        if not isinstance(values, np.ndarray) or values.ndim != 1 or values.dtype != np.float64:
            raise ValueError("parameter blocks must be 1-D float64 arrays")
        if manifold is not None and manifold.ambient_size != values.size:
            raise ValueError(f"manifold expects {manifold.ambient_size} values, block {key!r} has {values.size}")
        existing = self._blocks.get(key)
        if existing is not None:
            if existing.values is not values and not np.shares_memory(existing.values, values):
                raise ValueError(f"parameter block {key!r} is already bound to different storage")
            if manifold is not None:
                existing.manifold = manifold
            return
        self._blocks[key] = ParameterBlock(key=key, values=values, manifold=manifold)

    def set_parameter_block_constant(self, key: Hashable) -> None:
        self.parameter_block(key).constant = True

    def is_parameter_block_constant(self, key: Hashable) -> bool:
        return self.parameter_block(key).constant

    def add_residual_block(self, cost: CostFunction, keys: Sequence[Hashable]) -> None:
        keys = tuple(keys)
        if len(keys) != len(cost.parameter_block_sizes):
            raise ValueError(f"cost expects {len(cost.parameter_block_sizes)} parameter blocks, got {len(keys)}")
        for key, size in zip(keys, cost.parameter_block_sizes):
            block = self.parameter_block(key)
            if block.values.size != size:
                raise ValueError(f"parameter block {key!r} has size {block.values.size}, cost expects {size}")
        self._residual_blocks.append(ResidualBlock(cost=cost, keys=keys))

    def parameter_block(self, key: Hashable) -> ParameterBlock:
        try:
            return self._blocks[key]
        except KeyError:
            raise ValueError(f"unknown parameter block {key!r}") from None

    @property
    def residual_blocks(self) -> list[ResidualBlock]:
        return list(self._residual_blocks)

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return int(sum(rb.cost.num_residuals for rb in self._residual_blocks))

    @property
    def num_parameter_blocks(self) -> int:
        return len(self._blocks)

    def evaluate(self) -> np.ndarray:
        """Stacked residual vector at the current parameter values."""
        parts = [
            rb.cost.evaluate([self._blocks[k].values for k in rb.keys])[0].reshape(-1) for rb in self._residual_blocks
        ]
        if not parts:
            return np.zeros((0,), dtype=np.float64)
        return np.concatenate(parts, axis=0)


@dataclass(frozen=True)
class SolverSummary:
    initial_cost: float
    final_cost: float
    num_residuals: int
    num_residual_blocks: int
    num_parameter_blocks: int
    num_effective_parameters: int
    nfev: int
    status: int
    message: str
    sum_squared_residuals: float

    @property
    def converged(self) -> bool:
        return self.status > 0

    @property
    def mse(self) -> float:
        if self.num_residuals == 0:
            return 0.0
        return float(self.sum_squared_residuals / self.num_residuals)

    def brief_report(self) -> str:
        return (
            f"least_squares: initial cost {self.initial_cost:.6e}, final cost {self.final_cost:.6e}, "
            f"nfev {self.nfev}, residuals {self.num_residuals}, parameters {self.num_effective_parameters}, "
            f"status {self.status} ({self.message})"
        )


def _robust_cost(r: np.ndarray, loss: str, scale: float) -> float:
    """0.5 * sum(rho(r^2)) with the same loss definitions as scipy.optimize.least_squares."""
    z = (r * r) / (scale * scale)
    if loss == "linear":
        rho = z
    elif loss == "huber":
        rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    elif loss == "soft_l1":
        rho = 2.0 * (np.sqrt(1.0 + z) - 1.0)
    elif loss == "cauchy":
        rho = np.log1p(z)
    elif loss == "arctan":
        rho = np.arctan(z)
    else:
        raise ValueError(f"unknown loss {loss!r}")
    return float(0.5 * scale * scale * np.sum(rho))


def solve(problem: Problem, options: SolverOptions | None = None) -> SolverSummary:
    """
    Minimize the problem over the tangent space of every free parameter block.

    Free blocks are those referenced by at least one residual block and not
    marked constant; only they are written. Raises NumericalFailure when the
    residuals cannot be evaluated, are not finite or the minimizer fails,
    after restoring the free blocks to their initial values.
    """
    options = options or SolverOptions()
    residual_blocks = problem.residual_blocks
    num_residuals = problem.num_residuals

    free: list[ParameterBlock] = []
    offsets: dict[Hashable, tuple[int, int]] = {}
    n = 0
    for rb in residual_blocks:
        for key in rb.keys:
            block = problem.parameter_block(key)
            if block.constant or key in offsets:
                continue
            offsets[key] = (n, block.tangent_size)
            n += block.tangent_size
            free.append(block)
    x0 = {block.key: block.values.copy() for block in free}

    def set_state(delta: np.ndarray) -> None:
        for block in free:
            start, size = offsets[block.key]
            block.values[:] = block.plus(x0[block.key], delta[start : start + size])

    def fun(delta: np.ndarray) -> np.ndarray:
        set_state(delta)
        return problem.evaluate()

    def jac(delta: np.ndarray):
        set_state(delta)
        lifts = {
            block.key: block.manifold.plus_jacobian(block.values) for block in free if block.manifold is not None
        }
        J = np.zeros((num_residuals, n), dtype=np.float64)
        row = 0
        for rb in residual_blocks:
            m = rb.cost.num_residuals
            _r, jacobians = rb.cost.evaluate([problem.parameter_block(k).values for k in rb.keys], jacobians=True)
            for key, J_ambient in zip(rb.keys, jacobians):
                if key not in offsets:
                    continue
                start, size = offsets[key]
                lift = lifts.get(key)
                J[row : row + m, start : start + size] += J_ambient if lift is None else J_ambient @ lift
            row += m
        if options.linear_solver == "lsmr":
            return csr_matrix(J)
        return J

    def restore() -> None:
        logger.debug("restoring %d free parameter blocks to their initial values", len(free))
        for block in free:
            block.values[:] = x0[block.key]

    try:
        r0 = problem.evaluate()
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
        raise NumericalFailure(f"residuals cannot be evaluated at the initial point: {exc}") from exc
    if not np.all(np.isfinite(r0)):
        raise NumericalFailure("residuals are not finite at the initial point")
    initial_cost = _robust_cost(r0, options.loss, options.loss_scale)

    if num_residuals == 0 or n == 0:
        return SolverSummary(
            initial_cost=initial_cost,
            final_cost=initial_cost,
            num_residuals=num_residuals,
            num_residual_blocks=problem.num_residual_blocks,
            num_parameter_blocks=problem.num_parameter_blocks,
            num_effective_parameters=n,
            nfev=0,
            status=1,
            message="nothing to optimize",
            sum_squared_residuals=float(r0 @ r0),
        )

    try:
        sol = least_squares(
            fun,
            np.zeros((n,), dtype=np.float64),
            jac=jac,
            method="trf",
            loss=options.loss,
            f_scale=float(options.loss_scale),
            max_nfev=int(options.max_num_iterations),
            ftol=options.function_tolerance,
            xtol=options.parameter_tolerance,
            gtol=options.gradient_tolerance,
            x_scale=options.x_scale,
            tr_solver=options.linear_solver,
        )
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
        restore()
        raise NumericalFailure(f"minimizer failed: {exc}") from exc

    if not np.isfinite(sol.cost) or not np.all(np.isfinite(sol.x)):
        restore()
        raise NumericalFailure("minimizer returned a non-finite solution")

    set_state(sol.x)
    r = np.asarray(sol.fun, dtype=np.float64)
    return SolverSummary(
        initial_cost=initial_cost,
        final_cost=float(sol.cost),
        num_residuals=num_residuals,
        num_residual_blocks=problem.num_residual_blocks,
        num_parameter_blocks=problem.num_parameter_blocks,
        num_effective_parameters=n,
        nfev=int(sol.nfev),
        status=int(sol.status),
        message=str(sol.message),
        sum_squared_residuals=float(r @ r),
    )
