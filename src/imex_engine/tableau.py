# imex_engine/src/imex_engine/tableau.py
"""IMEX tableaux in the shifted, stage-by-stage layout used by the engine.

An :class:`ImexTableau` holds two lower-triangular ``S x S`` matrices
(explicit ``E`` and implicit ``I``). Row ``r < S - 1`` describes intermediate
stage ``r + 1``:

    Y_{r+1} = u_n + dt * sum_j E[r][j] F(Y_j) + dt * sum_j I[r][j] G(Y_{j+1})

where ``Y_0 = u_n``, ``F`` is the explicit operator and ``G`` the implicit one.
The last row holds the final update weights. Its explicit diagonal weights
``F(Y_{S-1})``; its implicit diagonal is defined by the layout but never used,
since the terminal stage has no implicit correction.

Standard ARS-type Butcher pairs (explicit strictly lower triangular, implicit
with a zero first column) convert to this layout with
:func:`ars_tableau_from_butcher`.

References:
    Ascher, U. M., Ruuth, S. J., & Spiteri, R. J. (1997). "Implicit-explicit
    Runge-Kutta methods for time-dependent partial differential equations".
    Applied Numerical Mathematics, 25(2-3), 151-167.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np

from .errors import ConfigurationError, ErrorCode, raise_invalid_tableau

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray


# =============================================================================
# Constants
# =============================================================================

CONSISTENCY_TOL: Final[float] = 1e-12

ARS343_GAMMA: Final[float] = 0.4358665215084590
ARS343_A42: Final[float] = 0.5529291480359398
ARS343_A43: Final[float] = 0.5529291480359398

_MIN_STAGES: Final[int] = 2

_UNKNOWN_TABLEAU_MSG = "Unknown tableau '{name}'; available: {available}"
_BAD_PARAMS_MSG = "Invalid parameters for tableau '{name}': {detail}"


# =============================================================================
# Tableau
# =============================================================================


def _as_rows(name: str, label: str, matrix: Sequence[Sequence[float]]) -> tuple[
    tuple[float, ...], ...
]:
    """Convert a matrix-like into a tuple of float rows, rejecting bad entries."""
    rows = tuple(tuple(float(v) for v in row) for row in matrix)
    for r, row in enumerate(rows):
        if not all(math.isfinite(v) for v in row):
            raise_invalid_tableau(name, detail=f"{label} row {r} has non-finite values")
    return rows


@dataclass(frozen=True, slots=True)
class ImexTableau:
    """Immutable IMEX tableau in the shifted engine layout.

    Attributes:
        name: Human-readable scheme name.
        explicit: Explicit coefficient rows, lower triangular incl. diagonal.
        implicit: Implicit coefficient rows, lower triangular incl. diagonal.

    Raises:
        InvalidTableauError: If the matrices are not square, differ in size,
            have fewer than two stages, carry non-zero entries above the
            diagonal, contain non-finite values, or violate first-order
            consistency.
    """

    name: str
    explicit: tuple[tuple[float, ...], ...]
    implicit: tuple[tuple[float, ...], ...]

    def __post_init__(self) -> None:
        explicit = _as_rows(self.name, "explicit", self.explicit)
        implicit = _as_rows(self.name, "implicit", self.implicit)
        object.__setattr__(self, "explicit", explicit)
        object.__setattr__(self, "implicit", implicit)

        n_exp = len(explicit)
        n_imp = len(implicit)
        if n_exp != n_imp:
            raise_invalid_tableau(
                self.name,
                detail=f"stage count mismatch (explicit {n_exp}, implicit {n_imp})",
            )
        if n_exp < _MIN_STAGES:
            raise_invalid_tableau(
                self.name, detail=f"need at least {_MIN_STAGES} stages, got {n_exp}"
            )

        for label, rows in (("explicit", explicit), ("implicit", implicit)):
            for r, row in enumerate(rows):
                if len(row) != n_exp:
                    raise_invalid_tableau(
                        self.name,
                        detail=f"{label} row {r} has {len(row)} entries, "
                        f"expected {n_exp}",
                    )
                if any(v != 0.0 for v in row[r + 1 :]):
                    raise_invalid_tableau(
                        self.name,
                        detail=f"{label} row {r} has entries above the diagonal",
                    )

        self._check_consistency()

    def _check_consistency(self) -> None:
        """Check first-order consistency of the row sums."""
        for r, (row_e, row_i) in enumerate(zip(self.explicit, self.implicit)):
            sum_e = math.fsum(row_e)
            sum_i = math.fsum(row_i)
            if not math.isclose(sum_e, sum_i, rel_tol=0.0, abs_tol=CONSISTENCY_TOL):
                raise_invalid_tableau(
                    self.name,
                    detail=f"row {r} sums differ (explicit {sum_e!r}, "
                    f"implicit {sum_i!r})",
                )

        final_sum = math.fsum(self.explicit[-1])
        if not math.isclose(final_sum, 1.0, rel_tol=0.0, abs_tol=CONSISTENCY_TOL):
            raise_invalid_tableau(
                self.name,
                detail=f"final update weights sum to {final_sum!r}, expected 1.0",
            )

    @property
    def n_stages(self) -> int:
        """Number of stages S (rows of either matrix)."""
        return len(self.explicit)

    def explicit_matrix(self) -> NDArray[np.float64]:
        """Return a fresh dense copy of the explicit matrix."""
        return np.array(self.explicit, dtype=np.float64)

    def implicit_matrix(self) -> NDArray[np.float64]:
        """Return a fresh dense copy of the implicit matrix."""
        return np.array(self.implicit, dtype=np.float64)


# =============================================================================
# Builders
# =============================================================================


def ars343(
    gamma: float = ARS343_GAMMA,
    a42: float = ARS343_A42,
    a43: float = ARS343_A43,
) -> ImexTableau:
    """Build the ARS(3,4,3) tableau from its closed form.

    The free parameter ``gamma`` and the explicit couplings ``a42``/``a43``
    determine the remaining constants through the order conditions.

    Args:
        gamma: Implicit diagonal coefficient.
        a42: Explicit coefficient of F(Y_2) in stage 4.
        a43: Explicit coefficient of F(Y_3) in stage 4.

    Returns:
        Four-stage ImexTableau.
    """
    g2 = gamma * gamma

    b1 = -1.5 * g2 + 4.0 * gamma - 0.25
    b2 = 1.5 * g2 - 5.0 * gamma + 1.25

    a31 = (
        (1.0 - 4.5 * gamma + 1.5 * g2) * a42
        + (2.75 - 10.5 * gamma + 3.75 * g2) * a43
        - 3.5
        + 13.0 * gamma
        - 4.5 * g2
    )
    a32 = (
        (-1.0 + 4.5 * gamma - 1.5 * g2) * a42
        + (-2.75 + 10.5 * gamma - 3.75 * g2) * a43
        + 4.0
        - 12.5 * gamma
        + 4.5 * g2
    )
    a41 = 1.0 - a42 - a43

    implicit = (
        (gamma, 0.0, 0.0, 0.0),
        (0.5 * (1.0 - gamma), gamma, 0.0, 0.0),
        (b1, b2, gamma, 0.0),
        (b1, b2, gamma, 0.0),
    )
    explicit = (
        (gamma, 0.0, 0.0, 0.0),
        (a31, a32, 0.0, 0.0),
        (a41, a42, a43, 0.0),
        (0.0, b1, b2, gamma),
    )
    return ImexTableau(name="ars343", explicit=explicit, implicit=implicit)


def ars_tableau_from_butcher(
    name: str,
    explicit_a: Sequence[Sequence[float]],
    explicit_b: Sequence[float],
    implicit_a: Sequence[Sequence[float]],
    implicit_b: Sequence[float],
) -> ImexTableau:
    """Convert a standard ARS-type Butcher pair to the engine layout.

    The pair must share ``m = s + 1`` stages where stage 0 is the explicit
    evaluation of the incoming state: ``explicit_a`` strictly lower
    triangular, ``implicit_a`` lower triangular with a zero first column, and
    ``implicit_b[0] == 0``.

    Args:
        name: Name for the resulting tableau.
        explicit_a: Explicit stage matrix, shape (m, m).
        explicit_b: Explicit weights, length m.
        implicit_a: Implicit stage matrix, shape (m, m).
        implicit_b: Implicit weights, length m.

    Returns:
        ImexTableau with ``S = m - 1`` rows.

    Raises:
        InvalidTableauError: If the pair is not of ARS type or sizes differ.
    """
    a_e = np.asarray(explicit_a, dtype=np.float64)
    a_i = np.asarray(implicit_a, dtype=np.float64)
    b_e = np.asarray(explicit_b, dtype=np.float64)
    b_i = np.asarray(implicit_b, dtype=np.float64)

    m = a_e.shape[0] if a_e.ndim == 2 else -1
    shapes_ok = (
        a_e.shape == (m, m)
        and a_i.shape == (m, m)
        and b_e.shape == (m,)
        and b_i.shape == (m,)
    )
    if not shapes_ok:
        raise_invalid_tableau(
            name,
            detail=f"Butcher pair shapes disagree: A_E {a_e.shape}, b_E {b_e.shape}, "
            f"A_I {a_i.shape}, b_I {b_i.shape}",
        )
    if np.any(np.triu(a_e) != 0.0):
        raise_invalid_tableau(name, detail="explicit matrix must be strictly lower")
    if np.any(np.triu(a_i, k=1) != 0.0):
        raise_invalid_tableau(name, detail="implicit matrix must be lower triangular")
    if np.any(a_i[:, 0] != 0.0) or b_i[0] != 0.0:
        raise_invalid_tableau(
            name, detail="implicit first column and first weight must be zero"
        )

    s = m - 1
    explicit = np.zeros((s + 1, s + 1), dtype=np.float64)
    implicit = np.zeros((s + 1, s + 1), dtype=np.float64)
    for r in range(s):
        explicit[r, : r + 1] = a_e[r + 1, : r + 1]
        implicit[r, : r + 1] = a_i[r + 1, 1 : r + 2]
    explicit[s, :] = b_e
    implicit[s, :s] = b_i[1:]

    return ImexTableau(
        name=name,
        explicit=tuple(map(tuple, explicit.tolist())),
        implicit=tuple(map(tuple, implicit.tolist())),
    )


def ars222() -> ImexTableau:
    """Build the second-order, L-stable ARS(2,2,2) tableau.

    Returns:
        Three-stage ImexTableau (two implicit stages plus the final update).
    """
    gamma = 1.0 - 1.0 / math.sqrt(2.0)
    delta = 1.0 - 1.0 / (2.0 * gamma)

    explicit_a = [
        [0.0, 0.0, 0.0],
        [gamma, 0.0, 0.0],
        [delta, 1.0 - delta, 0.0],
    ]
    implicit_a = [
        [0.0, 0.0, 0.0],
        [0.0, gamma, 0.0],
        [0.0, 1.0 - gamma, gamma],
    ]
    return ars_tableau_from_butcher(
        "ars222",
        explicit_a,
        [delta, 1.0 - delta, 0.0],
        implicit_a,
        [0.0, 1.0 - gamma, gamma],
    )


def ars443() -> ImexTableau:
    """Build the third-order, L-stable ARS(4,4,3) tableau.

    Returns:
        Five-stage ImexTableau (four implicit stages plus the final update).
    """
    explicit_a = [
        [0.0, 0.0, 0.0, 0.0, 0.0],
        [1 / 2, 0.0, 0.0, 0.0, 0.0],
        [11 / 18, 1 / 18, 0.0, 0.0, 0.0],
        [5 / 6, -5 / 6, 1 / 2, 0.0, 0.0],
        [1 / 4, 7 / 4, 3 / 4, -7 / 4, 0.0],
    ]
    implicit_a = [
        [0.0, 0.0, 0.0, 0.0, 0.0],
        [0.0, 1 / 2, 0.0, 0.0, 0.0],
        [0.0, 1 / 6, 1 / 2, 0.0, 0.0],
        [0.0, -1 / 2, 1 / 2, 1 / 2, 0.0],
        [0.0, 3 / 2, -3 / 2, 1 / 2, 1 / 2],
    ]
    return ars_tableau_from_butcher(
        "ars443",
        explicit_a,
        explicit_a[-1],
        implicit_a,
        implicit_a[-1],
    )


TABLEAU_BUILDERS: Final[dict[str, Callable[..., ImexTableau]]] = {
    "ars222": ars222,
    "ars343": ars343,
    "ars443": ars443,
}


def get_tableau(name: str, **params: float) -> ImexTableau:
    """
    Look up and build a named tableau.

    Args:
        name: Tableau name (case-insensitive), e.g. "ars343".
        **params: Builder parameters (only ars343 accepts any).

    Raises:
        ConfigurationError: If the name is unknown or the parameters do not
            match the builder signature.

    Returns:
        The constructed ImexTableau.
    """
    name_norm = str(name).strip().lower()
    builder = TABLEAU_BUILDERS.get(name_norm)
    if builder is None:
        msg = _UNKNOWN_TABLEAU_MSG.format(
            name=name, available=sorted(TABLEAU_BUILDERS)
        )
        raise ConfigurationError(msg, code=ErrorCode.INVALID_CONFIG)
    try:
        return builder(**params)
    except TypeError as exc:
        msg = _BAD_PARAMS_MSG.format(name=name_norm, detail=exc)
        raise ConfigurationError(msg, code=ErrorCode.INVALID_CONFIG) from exc
