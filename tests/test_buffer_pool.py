# tests/test_buffer_pool.py
"""Unit tests for the BufferPool class.

This module verifies:
- Construction, storage shape and default/custom axis names
- Slot views, bounds checking, set/copy helpers and shape enforcement
- Field-category views (state vs. tracers)
- Weighted slot combinations
- Reshape/unreshape helpers for axis-local operator solves
"""

from __future__ import annotations

import numpy as np
import pytest

from imex_engine.buffer_pool import BufferPool, BufferPoolOptions
from imex_engine.coefficients import StageCombination
from imex_engine.collaborators import FieldCategory
from imex_engine.errors import StateShapeError

# -------------------------------------------------------------------
# Construction
# -------------------------------------------------------------------


def test_pool_shapes_and_default_axis_names() -> None:
    """Storage stacks n_buffers copies of (fields + tracers, *grid)."""
    pool = BufferPool(7, 2, (5, 3), options=BufferPoolOptions(n_tracers=1))

    assert len(pool) == 7
    assert pool.state_shape == (3, 5, 3)
    assert pool.data.shape == (7, 3, 5, 3)
    assert pool.axis_names == ("field", "grid", "axis2")
    assert np.all(pool.data == 0.0)


def test_pool_custom_axis_names_and_length_check() -> None:
    """Custom axis names must match the buffer rank."""
    pool = BufferPool(3, 1, (4,), options=BufferPoolOptions(axis_names=("var", "x")))
    assert pool.axis_index("x") == 1

    with pytest.raises(ValueError, match="buffer rank is"):
        BufferPool(3, 1, (4,), options=BufferPoolOptions(axis_names=("var",)))


@pytest.mark.parametrize(
    ("n_buffers", "n_fields", "grid_shape", "match"),
    [
        (0, 1, (4,), "n_buffers"),
        (3, 0, (4,), "n_fields"),
        (3, 1, (0,), "grid_shape"),
    ],
)
def test_pool_invalid_sizes(
    n_buffers: int,
    n_fields: int,
    grid_shape: tuple[int, ...],
    match: str,
) -> None:
    """Invalid sizes are rejected at construction."""
    with pytest.raises(ValueError, match=match):
        BufferPool(n_buffers, n_fields, grid_shape)


# -------------------------------------------------------------------
# Slot access
# -------------------------------------------------------------------


def test_getitem_is_writable_view_and_bounds_checked() -> None:
    """Indexing returns views; out-of-range slots raise IndexError."""
    pool = BufferPool(3, 1, (4,))
    view = pool[1]
    view[...] = 2.0
    assert np.all(pool.data[1] == 2.0)

    with pytest.raises(IndexError, match="out of range"):
        _ = pool[3]
    with pytest.raises(IndexError):
        _ = pool[-1]


def test_set_buffer_and_copy_buffer() -> None:
    """set_buffer copies values in; copy_buffer duplicates slots."""
    pool = BufferPool(3, 1, (4,))
    values = np.arange(4.0).reshape(1, 4)

    pool.set_buffer(0, values)
    values[0, 0] = 99.0
    assert pool[0][0, 0] == 0.0

    pool.copy_buffer(0, 2)
    np.testing.assert_array_equal(pool[2], pool[0])
    assert not np.shares_memory(pool[2], pool[0])

    pool.copy_buffer(1, 1)
    assert np.all(pool[1] == 0.0)


def test_set_buffer_shape_mismatch_raises() -> None:
    """Wrong shapes raise StateShapeError (a ValueError)."""
    pool = BufferPool(3, 1, (4,))
    with pytest.raises(StateShapeError, match="shape"):
        pool.set_buffer(0, np.zeros((4,)))
    with pytest.raises(ValueError):  # noqa: PT011
        pool.set_buffer(0, np.zeros((2, 4)))


def test_fields_category_views() -> None:
    """STATE and TRACERS select disjoint ranges along the field axis."""
    pool = BufferPool(2, 2, (3,), options=BufferPoolOptions(n_tracers=1))
    pool.fields(0, FieldCategory.STATE)[...] = 1.0
    pool.fields(0, FieldCategory.TRACERS)[...] = -1.0

    np.testing.assert_array_equal(pool[0][:2], np.ones((2, 3)))
    np.testing.assert_array_equal(pool[0][2], -np.ones(3))
    assert pool.has_category(FieldCategory.TRACERS)


def test_fields_without_tracers_raises() -> None:
    """Requesting tracers from a tracer-free pool is an error."""
    pool = BufferPool(2, 1, (3,))
    assert not pool.has_category(FieldCategory.TRACERS)
    with pytest.raises(ValueError, match="no tracer"):
        pool.fields(0, FieldCategory.TRACERS)


def test_combine_weighted_sum_returns_fresh_array() -> None:
    """combine evaluates sum_k w_k * buffer[i_k] without aliasing the pool."""
    pool = BufferPool(3, 1, (2,))
    pool.set_buffer(0, np.array([[1.0, 2.0]]))
    pool.set_buffer(2, np.array([[10.0, 20.0]]))

    out = pool.combine(StageCombination(indices=(0, 2), weights=(0.5, 0.25)))
    np.testing.assert_allclose(out, np.array([[3.0, 6.0]]))
    assert not np.shares_memory(out, pool.data)

    with pytest.raises(IndexError):
        pool.combine(StageCombination.copy(5))


# -------------------------------------------------------------------
# Axis helpers
# -------------------------------------------------------------------


def test_axis_index_resolution() -> None:
    """Names and integer indices resolve; unknowns raise."""
    pool = BufferPool(2, 2, (4, 3))
    assert pool.state_ndim == 3
    assert pool.axis_index("grid") == 1
    assert pool.axis_index(2) == 2

    with pytest.raises(ValueError, match="Unknown buffer axis"):
        pool.axis_index("space")
    with pytest.raises(IndexError, match="out of range"):
        pool.axis_index(3)


def test_reshape_unreshape_roundtrip_along_grid() -> None:
    """Axis-local reshape moves the axis first and batches the rest."""
    pool = BufferPool(2, 2, (4, 3))
    x = np.arange(24.0).reshape(pool.state_shape)

    x2d, original_shape, axis_idx = pool.reshape_for_axis_solve(x, "grid")
    assert x2d.shape == (4, 6)
    assert axis_idx == 1
    np.testing.assert_array_equal(x2d[:, 0], x[0, :, 0])

    back = pool.unreshape_from_axis_solve(x2d, original_shape, "grid")
    np.testing.assert_array_equal(back, x)


def test_reshape_rejects_wrong_shape() -> None:
    """reshape_for_axis_solve enforces the buffer shape."""
    pool = BufferPool(2, 1, (4,))
    with pytest.raises(StateShapeError):
        pool.reshape_for_axis_solve(np.zeros((4,)), "grid")
