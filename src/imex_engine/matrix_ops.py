"""
Grid operators and factorized implicit solves for the bundled collaborators.

:mod:`imex_engine.linear_dynamics` builds on three pieces from here:

- 1D grid operators: second-order Laplacian (Neumann, absorbing or
  periodic ends), fourth-order hyperdiffusion and identity.
- Stage operator pairs ``(L, R) = (I - h A, I)`` for one implicit sub-step
  with scaled step ``h``.
- ``implicit_solve``, which factors ``L`` once per operator pair and reuses
  the factorization for later right-hand sides.

Notes:
    * Dense pairs use LAPACK LU (``scipy.linalg``); sparse pairs use SuperLU
      (``scipy.sparse.linalg.splu``).
    * The factorization cache is keyed by ``(id(L), id(R))`` and checked
      against the operators' shapes, dtypes and storage. Keep operator pairs
      alive while in use; a recycled id with an identical signature would
      otherwise hit a stale entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias, cast

import numpy as np
from numpy.typing import DTypeLike, NDArray
from scipy.linalg import lu_factor, lu_solve
from scipy.sparse import csc_matrix, csr_matrix, diags, identity, issparse
from scipy.sparse.linalg import splu

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Operator types
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.floating]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator


@dataclass(frozen=True, slots=True)
class GridGeometry:
    """Uniform 1D grid.

    Attributes:
        n: Number of cells.
        dx: Cell width.
    """

    n: int
    dx: float


# Identity operators switch to CSR storage from this size on.
_SPARSE_IDENTITY_MIN_N = 350

_BOUNDARY_CONDITIONS = frozenset({"neumann", "absorbing", "periodic"})


# =============================================================================
# Error message constants
# =============================================================================

_UNKNOWN_BC_ERROR = "Unknown bc: {bc}; expected one of {known}"
_OPERATORS_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_OPERATORS_DIM_ERROR = "Operator shape {shape} is incompatible with x shape {x_shape}"
_OPERATORS_MISMATCH_ERROR = (
    "Operators L and R must have the same shape; got {left} and {right}"
)
_X_NDIM_ERROR = "x must be 1D or 2D; got ndim={ndim}"
_OPERATOR_SCALE_ERROR = "scaled step must be finite; got {scale}"
_HYPERDIFFUSION_COEFF_ERROR = "hyperdiffusion coefficient must be >= 0; got {coeff}"


# =============================================================================
# Grid operators
# =============================================================================


def build_laplacian_tridiag(
    n: int,
    dx: float,
    coeff: float,
    dtype: DTypeLike = np.float64,
    bc: str = "neumann",
) -> csr_matrix:
    """Build ``coeff * Δ_h``, the three-point Laplacian on a uniform grid.

    Boundary handling:
        * ``neumann``: zero-flux ends (end diagonals are -1).
        * ``absorbing``: zero ghost values (end diagonals stay -2).
        * ``periodic``: the first and last cells are neighbours.

    Args:
        n: Number of grid points.
        dx: Grid spacing.
        coeff: Diffusivity (length^2 / time).
        dtype: Floating dtype.
        bc: Boundary condition name.

    Raises:
        ValueError: If bc is not one of the names above.

    Returns:
        CSR matrix of shape (n, n).
    """
    if bc not in _BOUNDARY_CONDITIONS:
        raise ValueError(
            _UNKNOWN_BC_ERROR.format(bc=bc, known=sorted(_BOUNDARY_CONDITIONS))
        )

    dtype_obj = np.dtype(dtype)
    main = np.full(n, -2.0, dtype=dtype_obj)
    if bc == "neumann":
        main[[0, -1]] = -1.0
    side = np.ones(n - 1, dtype=dtype_obj)
    lap = diags([side, main, side], [-1, 0, 1], shape=(n, n), format="csr")

    if bc == "periodic":
        wrap = csr_matrix(
            (np.ones(2, dtype=dtype_obj), ([0, n - 1], [n - 1, 0])),
            shape=(n, n),
        )
        lap = lap + wrap

    return cast("csr_matrix", (lap * (coeff / dx**2)).astype(dtype_obj).tocsr())


def build_hyperdiffusion_operator(
    geom: GridGeometry,
    coeff: float,
    *,
    dtype: DTypeLike = np.float64,
    bc: str = "periodic",
) -> csr_matrix:
    """Build the fourth-order hyperdiffusion operator ``-coeff * Δ_h Δ_h``.

    Args:
        geom: Grid geometry.
        coeff: Non-negative hyperdiffusion coefficient (length^4 / time).
        dtype: Floating dtype.
        bc: Boundary condition forwarded to the Laplacian.

    Raises:
        ValueError: If coeff is negative or not finite.

    Returns:
        CSR matrix, five-point in the interior.
    """
    if not np.isfinite(coeff) or coeff < 0.0:
        raise ValueError(_HYPERDIFFUSION_COEFF_ERROR.format(coeff=coeff))
    lap = build_laplacian_tridiag(geom.n, geom.dx, 1.0, dtype=dtype, bc=bc)
    return cast("csr_matrix", (-coeff * (lap @ lap)).tocsr())


def build_identity_operator(
    n: int,
    *,
    dtype: DTypeLike = np.float64,
    prefer_sparse: bool | None = None,
) -> Operator:
    """
    Build an n x n identity, dense or CSR.

    Args:
        n: Operator size.
        dtype: Floating dtype.
        prefer_sparse: Force CSR (True) or dense (False) storage. None picks
            CSR for large n.

    Returns:
        Identity operator.
    """
    dtype_obj = np.dtype(dtype)
    sparse = n >= _SPARSE_IDENTITY_MIN_N if prefer_sparse is None else prefer_sparse
    if sparse:
        return identity(n, format="csr", dtype=dtype_obj)
    return cast("DenseOperator", np.eye(n, dtype=dtype_obj))


def build_implicit_euler_operators(
    base_op: Operator,
    dt_scale: float,
) -> tuple[Operator, Operator]:
    """Build ``(L, R) = (I - dt_scale * A, I)`` with the storage of ``A``.

    Args:
        base_op: Linear operator A.
        dt_scale: Scaled step (implicit diagonal coefficient * dt).

    Raises:
        ValueError: If dt_scale is not finite.

    Returns:
        Operator pair for ``L y = R x``.
    """
    if not np.isfinite(dt_scale):
        raise ValueError(_OPERATOR_SCALE_ERROR.format(scale=dt_scale))

    n = int(base_op.shape[0])
    sparse = bool(issparse(base_op))
    base = base_op.tocsr() if sparse else np.asarray(base_op)
    ident = build_identity_operator(n, dtype=base.dtype, prefer_sparse=sparse)
    left = ident - dt_scale * base
    if sparse:
        return cast("csr_matrix", csr_matrix(left)), ident
    return cast("DenseOperator", left), ident


def apply_operator(op: Operator, x: NDArray[np.floating]) -> NDArray[np.floating]:
    """
    Apply a dense or sparse operator to a 1D or 2D array.

    Args:
        op: Square operator of size n.
        x: Array with leading dimension n.

    Returns:
        ``op @ x`` as a dense ndarray.
    """
    _validate_operand(op, x)
    return np.asarray(op @ x, dtype=x.dtype)


# =============================================================================
# Factorized implicit solves (cached)
# =============================================================================


@dataclass(frozen=True, slots=True)
class _FactorizedSolve:
    """Factorization of ``L`` plus the right operator ``R`` for ``L y = R x``.

    ``signature`` records shapes, dtypes and storage of both operators; a cache
    entry is only reused when the signature of the incoming pair matches.
    """

    signature: tuple[object, ...]
    right: Operator
    solve: Callable[[NDArray[np.floating]], NDArray[np.floating]]

    def __call__(self, x: NDArray[np.floating]) -> NDArray[np.floating]:
        rhs = np.asarray(self.right @ x)
        return np.asarray(self.solve(rhs), dtype=x.dtype)


# (id(L), id(R)) -> factorization
_IMPLICIT_SOLVER_CACHE: dict[tuple[int, int], _FactorizedSolve] = {}


def clear_implicit_solver_cache() -> None:
    """Drop every cached factorization."""
    _IMPLICIT_SOLVER_CACHE.clear()


def discard_implicit_solver(left_op: Operator, right_op: Operator) -> None:
    """Drop the cached factorization of one operator pair, if any."""
    _IMPLICIT_SOLVER_CACHE.pop((id(left_op), id(right_op)), None)


def _signature(left_op: Operator, right_op: Operator) -> tuple[object, ...]:
    return tuple(
        (tuple(op.shape), str(op.dtype), bool(issparse(op)))
        for op in (left_op, right_op)
    )


def _square_shape(op: Operator) -> tuple[int, int]:
    shape = tuple(int(d) for d in op.shape)
    if len(shape) != 2 or shape[0] != shape[1]:  # noqa: PLR2004
        raise ValueError(_OPERATORS_SQUARE_ERROR.format(shape=shape))
    return cast("tuple[int, int]", shape)


def _validate_operand(op: Operator, x: NDArray[np.floating]) -> None:
    n, _ = _square_shape(op)
    if x.ndim not in {1, 2}:
        raise ValueError(_X_NDIM_ERROR.format(ndim=x.ndim))
    if x.shape[0] != n:
        raise ValueError(_OPERATORS_DIM_ERROR.format(shape=(n, n), x_shape=x.shape))


def _factorize(left_op: Operator, right_op: Operator) -> _FactorizedSolve:
    """Factor ``L`` once: sparse LU when both operators are sparse, else LAPACK."""
    signature = _signature(left_op, right_op)

    if issparse(left_op) and issparse(right_op):
        lu_sparse = splu(csc_matrix(left_op))
        return _FactorizedSolve(signature, right_op, lu_sparse.solve)

    left_dense = left_op.toarray() if issparse(left_op) else np.asarray(left_op)
    right_dense = right_op.toarray() if issparse(right_op) else np.asarray(right_op)
    lu_piv = lu_factor(left_dense)

    def _dense_solve(rhs: NDArray[np.floating]) -> NDArray[np.floating]:
        return cast("NDArray[np.floating]", lu_solve(lu_piv, rhs))

    return _FactorizedSolve(signature, right_dense, _dense_solve)


def implicit_solve(
    left_op: Operator,
    right_op: Operator,
    x: NDArray[np.floating],
) -> NDArray[np.floating]:
    """
    Solve ``L y = R x``, reusing the factorization of ``L`` across calls.

    Args:
        left_op: Left operator L.
        right_op: Right operator R, same shape as L.
        x: Right-hand side(s), 1D or 2D with leading dimension n.

    Raises:
        ValueError: If operators are not square, differ in shape, or do not
            match the leading dimension of x.

    Returns:
        Solution y with the shape of x.
    """
    x_arr = cast("NDArray[np.floating]", np.asarray(x))
    l_shape = _square_shape(left_op)
    r_shape = _square_shape(right_op)
    if l_shape != r_shape:
        raise ValueError(_OPERATORS_MISMATCH_ERROR.format(left=l_shape, right=r_shape))
    _validate_operand(left_op, x_arr)

    key = (id(left_op), id(right_op))
    solver = _IMPLICIT_SOLVER_CACHE.get(key)
    if solver is None or solver.signature != _signature(left_op, right_op):
        solver = _factorize(left_op, right_op)
        _IMPLICIT_SOLVER_CACHE[key] = solver
    return solver(x_arr)
