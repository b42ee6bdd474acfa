# imex_engine/src/imex_engine/linear_dynamics.py
"""Reference collaborators operating on a :class:`BufferPool`.

These classes implement the collaborator protocols for split systems of the
form

    y' = F(t, y) + A y + g(t, y)

where ``F`` is treated explicitly, and the linear operator ``A`` (acting along
one buffer axis, all other axes batched) plus an optional nonlinear ``g`` are
treated implicitly. They are meant for tests, examples and small models; a
production model supplies its own collaborators with the same signatures.

Implicit semantics:
    * ``A`` only: one linear solve ``(I - h A) y = sum`` per call, with the
      operator pair cached per scaled step ``h`` for the few most recently
      used steps.
    * ``g`` present: fixed-point iteration
      ``y <- (I - h A)^{-1} (sum + h g(t, y))`` until the update falls below
      ``tol * (1 + max|y|)``. Non-convergence or non-finite iterates raise
      :class:`SolverFailureError`.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

import numpy as np
from numpy.typing import NDArray

from .collaborators import FieldCategory
from .errors import SolverFailureError, raise_state_shape_error
from .matrix_ops import (
    apply_operator,
    build_implicit_euler_operators,
    discard_implicit_solver,
    implicit_solve,
)

if TYPE_CHECKING:
    from .buffer_pool import BufferPool
    from .coefficients import StageCombination
    from .matrix_ops import Operator


logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_TOL_ERROR = "tol must be a positive finite float; got {tol}"
_MAX_ITER_ERROR = "max_iter must be >= 1; got {max_iter}"
_CACHE_SIZE_ERROR = "operator_cache_size must be >= 1; got {size}"
_STATE_BOUNDS_ERROR = "state_bounds must satisfy lower <= upper; got {bounds}"
_NON_FINITE_SOLVE_MSG = "implicit solve produced non-finite values (scaled_step={h})"
_NON_CONVERGED_MSG = (
    "fixed-point iteration did not converge in {iterations} iterations "
    "(residual={residual:.3e}, tol={tol:.3e}, scaled_step={h})"
)


# =============================================================================
# Type aliases / configuration
# =============================================================================

RHSFunction = Callable[[float, NDArray[np.floating]], NDArray[np.floating]]


@dataclass(frozen=True, slots=True)
class ImplicitSolverConfig:
    """Fixed-point iteration controls for nonlinear implicit terms.

    Attributes:
        tol: Relative update tolerance.
        max_iter: Maximum number of iterations per implicit call.
    """

    tol: float = 1e-10
    max_iter: int = 50

    def __post_init__(self) -> None:
        if not np.isfinite(self.tol) or self.tol <= 0.0:
            raise ValueError(_TOL_ERROR.format(tol=self.tol))
        if self.max_iter < 1:
            raise ValueError(_MAX_ITER_ERROR.format(max_iter=self.max_iter))


# =============================================================================
# Linear split dynamics
# =============================================================================


class LinearImexDynamics:
    """Explicit, implicit and closure collaborator for split linear systems."""

    def __init__(  # noqa: PLR0913
        self,
        pool: BufferPool,
        *,
        explicit_rhs: RHSFunction | None = None,
        implicit_operator: Operator | None = None,
        implicit_rhs: RHSFunction | None = None,
        operator_axis: str | int = "grid",
        hyperdiffusion: Operator | None = None,
        solver: ImplicitSolverConfig | None = None,
        operator_cache_size: int = 4,
    ) -> None:
        """
        Initialize LinearImexDynamics.

        Args:
            pool: Buffer pool the collaborator reads and writes.
            explicit_rhs: Explicit tendency ``F(t, y)`` on one buffer.
            implicit_operator: Linear operator ``A`` along operator_axis.
            implicit_rhs: Nonlinear implicit tendency ``g(t, y)``.
            operator_axis: Buffer axis the operators act on.
            hyperdiffusion: Operator ``D`` applied explicitly in the closure
                pass as ``y + dt * D y``. None copies the final stage.
            solver: Fixed-point controls for implicit_rhs.
            operator_cache_size: Most recently used scaled steps whose
                operator pairs (and factorizations) are kept.

        Raises:
            StateShapeError: If an operator does not match the axis length.
            ValueError: If operator_cache_size is below 1.
        """
        self.pool = pool
        self.explicit_rhs = explicit_rhs
        self.implicit_rhs = implicit_rhs
        self.solver = solver or ImplicitSolverConfig()

        self._op_axis = operator_axis
        self._op_axis_idx = pool.axis_index(operator_axis)
        self._op_axis_len = int(pool.state_shape[self._op_axis_idx])

        self.implicit_operator = implicit_operator
        self.hyperdiffusion = hyperdiffusion
        for name, op in (
            ("implicit_operator", implicit_operator),
            ("hyperdiffusion", hyperdiffusion),
        ):
            if op is not None:
                self._validate_operator(name, op)

        if operator_cache_size < 1:
            raise ValueError(_CACHE_SIZE_ERROR.format(size=operator_cache_size))
        self.operator_cache_size = operator_cache_size

        # scaled_step -> (L, R), least recently used first. Holding a pair keeps
        # its solver cache key alive; evicting it drops the factorization too.
        self._implicit_ops: OrderedDict[float, tuple[Operator, Operator]] = (
            OrderedDict()
        )

        logger.debug(
            "LinearImexDynamics on %r: axis=%s explicit=%s linear=%s nonlinear=%s",
            pool,
            operator_axis,
            explicit_rhs is not None,
            implicit_operator is not None,
            implicit_rhs is not None,
        )

    def _validate_operator(self, name: str, op: Operator) -> None:
        shape = tuple(int(d) for d in op.shape)
        if shape != (self._op_axis_len, self._op_axis_len):
            raise_state_shape_error(
                name=name,
                expected=f"({self._op_axis_len}, {self._op_axis_len})",
                got=shape,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        func: RHSFunction,
        time: float,
        y: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        out = np.asarray(func(time, y), dtype=self.pool.dtype)
        self.pool.validate_state_shape(out, name="rhs output")
        return out

    def _operators_for(self, scaled_step: float) -> tuple[Operator, Operator]:
        key = float(scaled_step)
        ops = self._implicit_ops.get(key)
        if ops is not None:
            self._implicit_ops.move_to_end(key)
            return ops

        base = cast("Operator", self.implicit_operator)
        ops = build_implicit_euler_operators(base, key)
        self._implicit_ops[key] = ops
        while len(self._implicit_ops) > self.operator_cache_size:
            _, evicted = self._implicit_ops.popitem(last=False)
            discard_implicit_solver(*evicted)
        return ops

    def _solve_linear(
        self,
        rhs: NDArray[np.floating],
        scaled_step: float,
    ) -> NDArray[np.floating]:
        """Return ``(I - scaled_step A)^{-1} rhs`` (rhs itself without A)."""
        if self.implicit_operator is None or scaled_step == 0.0:
            return rhs
        left_op, right_op = self._operators_for(scaled_step)
        x2d, original_shape, _ = self.pool.reshape_for_axis_solve(rhs, self._op_axis)
        out2d = implicit_solve(left_op, right_op, x2d)
        return self.pool.unreshape_from_axis_solve(out2d, original_shape, self._op_axis)

    def _apply_along_axis(
        self,
        op: Operator,
        y: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        y2d, original_shape, _ = self.pool.reshape_for_axis_solve(y, self._op_axis)
        out2d = apply_operator(op, y2d)
        return self.pool.unreshape_from_axis_solve(out2d, original_shape, self._op_axis)

    def clear_operator_cache(self) -> None:
        """Drop cached implicit operator pairs and their factorizations."""
        for ops in self._implicit_ops.values():
            discard_implicit_solver(*ops)
        self._implicit_ops.clear()

    # ------------------------------------------------------------------
    # Collaborator protocol methods
    # ------------------------------------------------------------------

    def step_explicit_combine(
        self,
        combination: StageCombination,
        source: int,
        target: int,
        time: float,
        scaled_step: float,
    ) -> None:
        """Write ``sum(combination) + scaled_step * F(time, buffer[source])``."""
        out = self.pool.combine(combination)
        if self.explicit_rhs is not None and scaled_step != 0.0:
            y_src = np.array(self.pool[source], copy=True)
            out += scaled_step * self._evaluate(self.explicit_rhs, time, y_src)
        self.pool.set_buffer(target, out)

    def step_implicit_combine(
        self,
        combination: StageCombination,
        target: int,
        time: float,
        scaled_step: float,
    ) -> None:
        """Solve ``y = sum(combination) + scaled_step * (A y + g(time, y))``.

        Raises:
            SolverFailureError: If the result is non-finite or the fixed-point
                iteration does not converge.
        """
        rhs = self.pool.combine(combination)

        if self.implicit_rhs is None:
            y = self._solve_linear(rhs, scaled_step)
            if not np.all(np.isfinite(y)):
                raise SolverFailureError(_NON_FINITE_SOLVE_MSG.format(h=scaled_step))
        else:
            y = self._fixed_point(rhs, time, scaled_step)

        self.pool.set_buffer(target, y)

    def _fixed_point(
        self,
        rhs: NDArray[np.floating],
        time: float,
        scaled_step: float,
    ) -> NDArray[np.floating]:
        g = cast("RHSFunction", self.implicit_rhs)
        tol = self.solver.tol
        y = self._solve_linear(rhs, scaled_step)
        residual = float("inf")

        for iteration in range(1, self.solver.max_iter + 1):
            y_new = self._solve_linear(
                rhs + scaled_step * self._evaluate(g, time, y), scaled_step
            )
            if not np.all(np.isfinite(y_new)):
                raise SolverFailureError(
                    _NON_FINITE_SOLVE_MSG.format(h=scaled_step),
                    iterations=iteration,
                )
            residual = float(np.max(np.abs(y_new - y)))
            y = y_new
            if residual <= tol * (1.0 + float(np.max(np.abs(y)))):
                logger.debug(
                    "fixed point converged after %d iterations (residual=%.3e)",
                    iteration,
                    residual,
                )
                return y

        raise SolverFailureError(
            _NON_CONVERGED_MSG.format(
                iterations=self.solver.max_iter,
                residual=residual,
                tol=tol,
                h=scaled_step,
            ),
            iterations=self.solver.max_iter,
            residual=residual,
        )

    def step_after_subcycle_combine(
        self,
        source: int,
        target: int,
        time: float,  # noqa: ARG002
        step: float,
    ) -> None:
        """Write ``y + step * D y`` (or a copy of y) for ``y = buffer[source]``."""
        y = np.array(self.pool[source], copy=True)
        if self.hyperdiffusion is not None and step != 0.0:
            y += step * self._apply_along_axis(self.hyperdiffusion, y)
        self.pool.set_buffer(target, y)


# =============================================================================
# Post-processing
# =============================================================================


class SubstageFilter:
    """Idempotent clipping post-processor.

    Tracers are floored at ``tracer_floor`` (negative tracer mass is an
    explicit-step artifact); prognostic fields are optionally clipped to
    ``state_bounds``.
    """

    def __init__(
        self,
        pool: BufferPool,
        *,
        tracer_floor: float | None = 0.0,
        state_bounds: tuple[float, float] | None = None,
    ) -> None:
        """
        Initialize SubstageFilter.

        Args:
            pool: Buffer pool to filter in place.
            tracer_floor: Lower bound for tracer fields, or None to disable.
            state_bounds: (lower, upper) bounds for state fields, or None.

        Raises:
            ValueError: If state_bounds is not ordered.
        """
        if state_bounds is not None and state_bounds[0] > state_bounds[1]:
            raise ValueError(_STATE_BOUNDS_ERROR.format(bounds=state_bounds))
        self.pool = pool
        self.tracer_floor = tracer_floor
        self.state_bounds = state_bounds

    def post_process_substage(self, index: int, category: FieldCategory) -> None:
        """Clip one category of one buffer in place."""
        if not self.pool.has_category(category):
            return

        view = self.pool.fields(index, category)
        if category is FieldCategory.TRACERS:
            if self.tracer_floor is not None:
                np.maximum(view, self.tracer_floor, out=view)
        elif self.state_bounds is not None:
            lower, upper = self.state_bounds
            np.clip(view, lower, upper, out=view)
