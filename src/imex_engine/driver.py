# imex_engine/src/imex_engine/driver.py
"""Time-grid driver with an optional step-halving retry policy.

:class:`TimestepDriver` owns the run loop around an
:class:`~imex_engine.timestep_scheme.ImexTimestepScheme`:

- Validates a strictly increasing time grid and derives per-interval dt.
- Calls ``scheme.step`` once per interval with first/last flags.
- Records slot 0 after every interval when history is enabled.
- On :class:`SolverFailureError`, restores slot 0 from a checkpoint and
  retries the interval as two half steps, recursively, up to
  ``RetryPolicy.max_halvings`` levels. Beyond that the failure propagates.

The scheme itself never retries; this module is the only place that does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import numpy.typing as npt

from .errors import SolverFailureError, raise_state_shape_error

if TYPE_CHECKING:
    from .buffer_pool import BufferPool
    from .timestep_scheme import ImexTimestepScheme


logger = logging.getLogger(__name__)


# Error / message constants -------------------------------------------------

_TIMEGRID_1D_ERROR = "time_grid must be 1D; output times are a flat sequence"
_TIMEGRID_MIN_POINTS_ERROR = "time_grid needs at least one output time"
_TIMEGRID_MONOTONE_ERROR = "time_grid must be strictly increasing (dt > 0)"
_MAX_HALVINGS_ERROR = "max_halvings must be >= 0; got {max_halvings}"

_HISTORY_NOT_STORED_ERROR = "history is disabled (store_history=False)"
_STEP_OOB_ERROR = "output index {step} out of range [0, {n})"
_FINAL_TIMESTEP_ERROR = "run already reached the final timestep"
_STATE_NOT_SET_ERROR = "Initial state has not been set"
_POOL_TOO_SMALL_ERROR = "pool has {actual} buffers; scheme requires {expected}"
_RETRY_EXHAUSTED_NOTE = "step [{t0:g}, {t1:g}] failed after {halvings} halving(s)"


# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Step-halving retry configuration.

    Attributes:
        max_halvings: Maximum recursion depth of interval halving after a
            solver failure. 0 disables retries.
    """

    max_halvings: int = 0

    def __post_init__(self) -> None:
        if self.max_halvings < 0:
            raise ValueError(_MAX_HALVINGS_ERROR.format(max_halvings=self.max_halvings))


def _validated_time_grid(time_grid: np.ndarray, dtype: np.dtype) -> FloatArray:
    grid = np.asarray(time_grid, dtype=dtype)
    if grid.ndim != 1:
        raise ValueError(_TIMEGRID_1D_ERROR)
    if grid.size == 0:
        raise ValueError(_TIMEGRID_MIN_POINTS_ERROR)
    if np.any(np.diff(grid) <= 0):
        raise ValueError(_TIMEGRID_MONOTONE_ERROR)
    return cast("FloatArray", grid)


class TimestepDriver:
    """Run a scheme over a fixed output time grid."""

    def __init__(
        self,
        scheme: ImexTimestepScheme,
        pool: BufferPool,
        time_grid: np.ndarray,
        *,
        store_history: bool = True,
        retry: RetryPolicy | None = None,
    ) -> None:
        """
        Initialize TimestepDriver.

        Args:
            scheme: Step sequencer.
            pool: Buffer pool the scheme's collaborators operate on.
            time_grid: 1D strictly increasing output times.
            store_history: Whether to record slot 0 at every output time.
            retry: Retry policy for solver failures.

        Raises:
            ValueError: If the time grid is invalid or the pool is too small.
        """
        if len(pool) < scheme.required_buffers:
            raise ValueError(
                _POOL_TOO_SMALL_ERROR.format(
                    actual=len(pool), expected=scheme.required_buffers
                )
            )

        self.scheme = scheme
        self.pool = pool
        self.retry = retry or RetryPolicy()
        self.dtype = pool.dtype

        self.time_grid = _validated_time_grid(time_grid, self.dtype)
        self.n_timesteps = int(self.time_grid.size)
        self.dt_grid = np.diff(self.time_grid)

        self.store_history = bool(store_history)
        self.state_array: FloatArray | None
        if self.store_history:
            self.state_array = cast(
                "FloatArray",
                np.zeros((self.n_timesteps, *pool.state_shape), dtype=self.dtype),
            )
        else:
            self.state_array = None

        self.current_step = 0
        self.retry_count = 0
        self._initialized = False

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        """Current simulation time t = time_grid[current_step]."""
        return float(self.time_grid[self.current_step])

    def set_initial_state(self, initial_state: np.ndarray) -> None:
        """
        Load the initial state into slot 0 and reset the run.

        Args:
            initial_state: Array of shape pool.state_shape.

        Raises:
            StateShapeError: If initial_state has the wrong shape.
        """
        arr = np.asarray(initial_state, dtype=self.dtype)
        if arr.shape != self.pool.state_shape:
            raise_state_shape_error(
                name="initial_state",
                expected=f"shape {self.pool.state_shape}",
                got=arr.shape,
            )
        self.pool.set_buffer(0, arr)
        self.current_step = 0
        self.retry_count = 0
        self._initialized = True
        self._record()

    def current_state(self) -> FloatArray:
        """Return a copy of slot 0."""
        return cast("FloatArray", np.array(self.pool[0], copy=True))

    def get_state_at(self, step: int) -> FloatArray:
        """
        Return the state at a given output index from history.

        Args:
            step: Output index in [0, n_timesteps).

        Returns:
            State at the given output time.

        Raises:
            RuntimeError: if history is not stored.
            IndexError: if step is out of bounds.
        """
        if not self.store_history or self.state_array is None:
            raise RuntimeError(_HISTORY_NOT_STORED_ERROR)
        if not (0 <= step < self.n_timesteps):
            raise IndexError(_STEP_OOB_ERROR.format(step=step, n=self.n_timesteps))
        return cast("FloatArray", self.state_array[step])

    def _record(self) -> None:
        if self.store_history and self.state_array is not None:
            self.state_array[self.current_step] = self.pool[0]

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _advance_interval(
        self,
        t0: float,
        dt: float,
        *,
        is_first: bool,
        is_last: bool,
        depth: int,
    ) -> None:
        """Advance slot 0 over [t0, t0 + dt], halving on solver failure."""
        checkpoint = np.array(self.pool[0], copy=True)
        try:
            self.scheme.step(is_first, is_last, t0, dt)
        except SolverFailureError as exc:
            self.pool.set_buffer(0, checkpoint)
            if depth >= self.retry.max_halvings:
                exc.add_note(
                    _RETRY_EXHAUSTED_NOTE.format(t0=t0, t1=t0 + dt, halvings=depth)
                )
                raise

            half = 0.5 * dt
            self.retry_count += 1
            logger.warning(
                "Solver failure on [%g, %g] (depth %d); retrying as two steps of %g",
                t0,
                t0 + dt,
                depth,
                half,
            )
            try:
                self._advance_interval(
                    t0, half, is_first=is_first, is_last=False, depth=depth + 1
                )
                self._advance_interval(
                    t0 + half, half, is_first=False, is_last=is_last, depth=depth + 1
                )
            except SolverFailureError:
                # A committed first half must not outlive a failed second half.
                self.pool.set_buffer(0, checkpoint)
                raise

    def advance(self) -> None:
        """
        Advance one output interval.

        Raises:
            RuntimeError: If no initial state was set or the run is complete.
            SolverFailureError: If the interval fails after all retries. Slot 0
                then holds the state at the start of the interval.
        """
        if not self._initialized:
            raise RuntimeError(_STATE_NOT_SET_ERROR)
        if self.current_step >= self.n_timesteps - 1:
            raise RuntimeError(_FINAL_TIMESTEP_ERROR)

        idx = self.current_step
        self._advance_interval(
            float(self.time_grid[idx]),
            float(self.dt_grid[idx]),
            is_first=idx == 0,
            is_last=idx == self.n_timesteps - 2,
            depth=0,
        )
        self.current_step += 1
        self._record()

    def run(self) -> FloatArray:
        """
        Advance through the remaining time grid.

        Returns:
            Final state (copy of slot 0).
        """
        logger.debug(
            "Running %s over %d intervals",
            self.scheme.tableau.name,
            self.n_timesteps - 1,
        )
        while self.current_step < self.n_timesteps - 1:
            self.advance()
        return self.current_state()
