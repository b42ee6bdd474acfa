"""Global pytest configuration and shared fixtures for imex_engine."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from imex_engine.buffer_pool import BufferPool, BufferPoolOptions
from imex_engine.matrix_ops import clear_implicit_solver_cache

# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "convergence: mark test as a multi-resolution convergence study",
    )


# -----------------------------------------------------------------------------
# Shared fixtures
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_solver_cache() -> Iterator[None]:
    """Isolate tests from each other's cached factorizations."""
    clear_implicit_solver_cache()
    yield
    clear_implicit_solver_cache()


PoolFactory = Callable[..., BufferPool]


@pytest.fixture
def make_pool() -> PoolFactory:
    """
    Factory for small buffer pools.

    Usage:
        def test_x(make_pool):
            pool = make_pool(n_buffers=7, n_fields=1, grid_shape=(4,))
    """

    def _make(
        n_buffers: int = 7,
        n_fields: int = 1,
        grid_shape: tuple[int, ...] = (4,),
        n_tracers: int = 0,
    ) -> BufferPool:
        return BufferPool(
            n_buffers,
            n_fields,
            grid_shape,
            options=BufferPoolOptions(n_tracers=n_tracers),
        )

    return _make
