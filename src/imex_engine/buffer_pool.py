# imex_engine/src/imex_engine/buffer_pool.py
"""Dense in-memory buffer pool addressed by slot index.

The time-integration core only ever names buffers by integer slot. This
module provides a simple NumPy-backed pool that the bundled collaborators
(:mod:`imex_engine.linear_dynamics`), the driver and the tests operate on:

- One contiguous array of shape ``(n_buffers, n_fields + n_tracers, *grid)``.
- Views per slot and per field category (prognostic state vs. tracers).
- Weighted slot combinations evaluated into fresh arrays.
- Axis-local reshaping for operator solves along one grid axis.

The pool does not know about stages or tableaux; slot semantics live in
:mod:`imex_engine.slots`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import numpy.typing as npt

from .collaborators import FieldCategory
from .errors import raise_state_shape_error

if TYPE_CHECKING:
    from numpy.typing import DTypeLike

    from .coefficients import StageCombination


# Error / message constants -------------------------------------------------

_N_BUFFERS_ERROR = "n_buffers must be >= 1; got {n_buffers}"
_N_FIELDS_ERROR = (
    "n_fields must be >= 1 and n_tracers >= 0; got {n_fields}, {n_tracers}"
)
_GRID_SHAPE_ERROR = "grid_shape entries must be >= 1; got {grid_shape}"

_AXIS_NAMES_LEN_ERROR = "axis_names has {actual} entries; buffer rank is {expected}"
_AXIS_UNKNOWN_ERROR = "Unknown buffer axis: {axis!r}"
_AXIS_INDEX_OOB_ERROR = "buffer axis {axis} out of range"

_SLOT_OOB_ERROR = "buffer slot {index} out of range for a pool of {n_buffers}"
_NO_TRACERS_ERROR = "pool has no tracer fields"
_UNKNOWN_CATEGORY_ERROR = "Unknown field category: {category}"


# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]


def _default_axis_names(rank: int) -> tuple[str, ...]:
    """Name the field axis, the first grid axis, then axis2, axis3, ..."""
    names = ("field", "grid")[:rank]
    return names + tuple(f"axis{i}" for i in range(len(names), rank))


@dataclass(frozen=True, slots=True)
class BufferPoolOptions:
    """Optional configuration for BufferPool.

    Attributes:
        n_tracers: Number of passive tracer fields stored after the
            prognostic fields along the field axis.
        axis_names: Optional names for each axis of one buffer (field axis
            first). Length must equal the buffer rank.
        dtype: Floating-point dtype for the pool storage.
    """

    n_tracers: int = 0
    axis_names: tuple[str, ...] | None = None
    dtype: DTypeLike = np.float64


class BufferPool:
    """Fixed set of equally shaped state buffers."""

    def __init__(
        self,
        n_buffers: int,
        n_fields: int,
        grid_shape: tuple[int, ...],
        *,
        options: BufferPoolOptions | None = None,
    ) -> None:
        """
        Initialize BufferPool.

        Args:
            n_buffers: Number of slots (``2S - 1`` for an S-stage scheme).
            n_fields: Number of prognostic state fields.
            grid_shape: Spatial grid shape shared by every field.
            options: Optional BufferPoolOptions.

        Raises:
            ValueError: If any size is invalid or axis_names has the wrong length.
        """
        opts = options or BufferPoolOptions()

        if n_buffers < 1:
            raise ValueError(_N_BUFFERS_ERROR.format(n_buffers=n_buffers))
        if n_fields < 1 or opts.n_tracers < 0:
            raise ValueError(
                _N_FIELDS_ERROR.format(n_fields=n_fields, n_tracers=opts.n_tracers)
            )
        grid = tuple(int(d) for d in grid_shape)
        if any(d < 1 for d in grid):
            raise ValueError(_GRID_SHAPE_ERROR.format(grid_shape=grid))

        self.dtype = np.dtype(opts.dtype)
        self.n_buffers = int(n_buffers)
        self.n_fields = int(n_fields)
        self.n_tracers = int(opts.n_tracers)
        self.grid_shape = grid
        self.state_shape = (self.n_fields + self.n_tracers, *grid)

        names = opts.axis_names or _default_axis_names(len(self.state_shape))
        if len(names) != len(self.state_shape):
            raise ValueError(
                _AXIS_NAMES_LEN_ERROR.format(
                    actual=len(names), expected=len(self.state_shape)
                )
            )
        self.axis_names: tuple[str, ...] = tuple(names)

        self.data: FloatArray = cast(
            "FloatArray",
            np.zeros((self.n_buffers, *self.state_shape), dtype=self.dtype),
        )

    def __repr__(self) -> str:
        return (
            f"BufferPool(n_buffers={self.n_buffers}, n_fields={self.n_fields}, "
            f"n_tracers={self.n_tracers}, grid_shape={self.grid_shape})"
        )

    def __len__(self) -> int:
        return self.n_buffers

    def _check_index(self, index: int) -> int:
        idx = int(index)
        if not (0 <= idx < self.n_buffers):
            raise IndexError(
                _SLOT_OOB_ERROR.format(index=index, n_buffers=self.n_buffers)
            )
        return idx

    def __getitem__(self, index: int) -> FloatArray:
        """Return a writable view of one buffer slot."""
        return cast("FloatArray", self.data[self._check_index(index)])

    # ------------------------------------------------------------------
    # Slot access
    # ------------------------------------------------------------------

    def fields(self, index: int, category: FieldCategory) -> FloatArray:
        """
        Return a writable view of one field category of one slot.

        Args:
            index: Buffer slot.
            category: STATE selects the prognostic fields, TRACERS the tracers.

        Raises:
            ValueError: If TRACERS is requested on a pool without tracers or
                the category is unknown.

        Returns:
            View of shape ``(n_category_fields, *grid_shape)``.
        """
        buf = self[index]
        if category is FieldCategory.STATE:
            return cast("FloatArray", buf[: self.n_fields])
        if category is FieldCategory.TRACERS:
            if self.n_tracers == 0:
                raise ValueError(_NO_TRACERS_ERROR)
            return cast("FloatArray", buf[self.n_fields :])
        raise ValueError(_UNKNOWN_CATEGORY_ERROR.format(category=category))

    def has_category(self, category: FieldCategory) -> bool:
        """Whether the pool stores any field of the given category."""
        if category is FieldCategory.TRACERS:
            return self.n_tracers > 0
        return True

    def validate_state_shape(self, arr: np.ndarray, *, name: str = "state") -> None:
        """
        Validate that arr has state_shape.

        Args:
            arr: Array to validate.
            name: Name used in the error message.

        Raises:
            StateShapeError: If arr does not have shape state_shape.
        """
        arr_shape = np.asarray(arr).shape
        if arr_shape != self.state_shape:
            raise_state_shape_error(
                name=name, expected=f"shape {self.state_shape}", got=arr_shape
            )

    def set_buffer(self, index: int, values: np.ndarray) -> None:
        """
        Copy values into a slot.

        Args:
            index: Destination slot.
            values: Array of shape state_shape.

        Raises:
            StateShapeError: If values has the wrong shape.
        """
        arr = np.asarray(values, dtype=self.dtype)
        self.validate_state_shape(arr, name=f"buffer[{index}] values")
        np.copyto(self[index], arr)

    def copy_buffer(self, source: int, target: int) -> None:
        """Copy one slot into another (no-op when they coincide)."""
        src = self._check_index(source)
        dst = self._check_index(target)
        if src != dst:
            np.copyto(self.data[dst], self.data[src])

    def combine(self, combination: StageCombination) -> FloatArray:
        """
        Evaluate a weighted slot combination into a fresh array.

        Args:
            combination: Slot indices and weights.

        Returns:
            ``sum_k weights[k] * buffer[indices[k]]`` with shape state_shape.
        """
        idx = [self._check_index(i) for i in combination.indices]
        weights = np.asarray(combination.weights, dtype=self.dtype)
        out = np.tensordot(weights, self.data[idx], axes=(0, 0))
        return cast("FloatArray", np.asarray(out, dtype=self.dtype))

    # ------------------------------------------------------------------
    # Axis helpers
    # ------------------------------------------------------------------

    @property
    def state_ndim(self) -> int:
        """Rank of one buffer (field axis included)."""
        return len(self.state_shape)

    def axis_index(self, axis: str | int) -> int:
        """
        Resolve a buffer axis given by name or position.

        Raises:
            IndexError: For a position outside ``[0, state_ndim)``.
            ValueError: For a name not in axis_names.
        """
        if not isinstance(axis, str):
            pos = int(axis)
            if pos < 0 or pos >= self.state_ndim:
                raise IndexError(_AXIS_INDEX_OOB_ERROR.format(axis=axis))
            return pos
        if axis not in self.axis_names:
            raise ValueError(_AXIS_UNKNOWN_ERROR.format(axis=axis))
        return self.axis_names.index(axis)

    def reshape_for_axis_solve(
        self,
        x: np.ndarray,
        axis: str | int,
    ) -> tuple[FloatArray, tuple[int, ...], int]:
        """Flatten a state-shaped tensor to ``(axis_len, batch)``.

        The chosen axis becomes the leading dimension; every other axis is
        folded into columns, so one operator solve covers all of them.

        Returns:
            ``(x2d, state_shape, axis_index)``.

        Raises:
            StateShapeError: if x does not have shape state_shape.
        """
        x_arr = np.asarray(x, dtype=self.dtype)
        self.validate_state_shape(x_arr)
        pos = self.axis_index(axis)
        x2d = np.moveaxis(x_arr, pos, 0).reshape(x_arr.shape[pos], -1)
        return cast("FloatArray", x2d), self.state_shape, pos

    def unreshape_from_axis_solve(
        self,
        x2d: np.ndarray,
        original_shape: tuple[int, ...],
        axis: str | int,
    ) -> FloatArray:
        """Undo :meth:`reshape_for_axis_solve` for a result of the same size."""
        pos = self.axis_index(axis)
        rest = original_shape[:pos] + original_shape[pos + 1 :]
        lead = np.asarray(x2d, dtype=self.dtype).reshape(original_shape[pos], *rest)
        return cast("FloatArray", np.moveaxis(lead, 0, pos))
