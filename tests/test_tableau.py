# tests/test_tableau.py
"""Unit tests for imex_engine.tableau.

This module verifies:
- ARS(3,4,3) closed-form construction (diagonals, final weights, unused
  terminal implicit diagonal).
- Validation of malformed tableaux (shape, triangularity, finiteness,
  consistency).
- Conversion of standard ARS Butcher pairs to the engine layout, including
  reproduction of the closed-form ARS(3,4,3).
- Named lookup via get_tableau.
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from imex_engine.errors import ConfigurationError, InvalidTableauError
from imex_engine.tableau import (
    ARS343_GAMMA,
    CONSISTENCY_TOL,
    ImexTableau,
    ars222,
    ars343,
    ars443,
    ars_tableau_from_butcher,
    get_tableau,
)

# -------------------------------------------------------------------
# Closed-form ARS(3,4,3)
# -------------------------------------------------------------------


def test_ars343_shape_and_diagonals() -> None:
    """ARS(3,4,3) has four stages with gamma on the leading diagonals."""
    tab = ars343()
    assert tab.n_stages == 4
    assert tab.name == "ars343"

    e = tab.explicit_matrix()
    i = tab.implicit_matrix()
    assert e.shape == (4, 4)
    assert i.shape == (4, 4)

    assert e[0, 0] == ARS343_GAMMA
    assert i[0, 0] == ARS343_GAMMA
    assert i[1, 1] == ARS343_GAMMA
    assert i[2, 2] == ARS343_GAMMA
    assert e[3, 3] == ARS343_GAMMA

    # Terminal implicit diagonal exists in the layout but is zero.
    assert i[3, 3] == 0.0


def test_ars343_final_weights_sum_to_one_and_rows_consistent() -> None:
    """Final explicit weights sum to 1 and row sums agree between E and I."""
    tab = ars343()
    assert math.isclose(math.fsum(tab.explicit[-1]), 1.0, abs_tol=CONSISTENCY_TOL)
    for row_e, row_i in zip(tab.explicit, tab.implicit):
        assert math.isclose(math.fsum(row_e), math.fsum(row_i), abs_tol=1e-12)

    # Final implicit weights mirror the final explicit ones (stiffly accurate).
    assert tab.implicit[3][:3] == tab.explicit[3][1:]


def test_ars343_matrices_are_fresh_copies() -> None:
    """Mutating the returned matrices does not affect the tableau."""
    tab = ars343()
    e = tab.explicit_matrix()
    e[0, 0] = 99.0
    assert tab.explicit[0][0] == ARS343_GAMMA


def test_ars343_custom_gamma_changes_diagonal() -> None:
    """Closed form accepts a different gamma and stays consistent."""
    tab = ars343(gamma=0.4)
    assert tab.explicit[0][0] == 0.4
    assert tab.implicit[2][2] == 0.4


# -------------------------------------------------------------------
# Validation
# -------------------------------------------------------------------


def test_tableau_rejects_single_stage() -> None:
    """At least two stages are required."""
    with pytest.raises(InvalidTableauError, match="at least 2 stages"):
        ImexTableau(name="one", explicit=((1.0,),), implicit=((1.0,),))


def test_tableau_rejects_stage_count_mismatch() -> None:
    """Explicit and implicit matrices must have the same size."""
    with pytest.raises(InvalidTableauError, match="stage count mismatch"):
        ImexTableau(
            name="bad",
            explicit=((0.5, 0.0), (0.5, 0.5)),
            implicit=((0.5, 0.0, 0.0), (0.5, 0.5, 0.0), (0.5, 0.5, 0.0)),
        )


def test_tableau_rejects_ragged_rows() -> None:
    """Rows must have exactly S entries."""
    with pytest.raises(InvalidTableauError, match="row 0 has 1 entries"):
        ImexTableau(
            name="bad",
            explicit=((0.5,), (0.5, 0.5)),
            implicit=((0.5, 0.0), (0.5, 0.5)),
        )


def test_tableau_rejects_entries_above_diagonal() -> None:
    """Non-zero strictly-upper entries are rejected."""
    with pytest.raises(InvalidTableauError, match="above the diagonal"):
        ImexTableau(
            name="bad",
            explicit=((0.5, 0.1), (0.5, 0.5)),
            implicit=((0.5, 0.0), (0.5, 0.5)),
        )


def test_tableau_rejects_non_finite() -> None:
    """NaN/inf coefficients are rejected."""
    with pytest.raises(InvalidTableauError, match="non-finite"):
        ImexTableau(
            name="bad",
            explicit=((float("nan"), 0.0), (0.5, 0.5)),
            implicit=((0.5, 0.0), (0.5, 0.5)),
        )


def test_tableau_rejects_inconsistent_row_sums() -> None:
    """Explicit and implicit row sums must agree."""
    with pytest.raises(InvalidTableauError, match="row 0 sums differ"):
        ImexTableau(
            name="bad",
            explicit=((0.5, 0.0), (0.5, 0.5)),
            implicit=((0.4, 0.0), (0.5, 0.5)),
        )


def test_tableau_rejects_final_weights_not_summing_to_one() -> None:
    """Final update weights must sum to one."""
    with pytest.raises(InvalidTableauError, match="final update weights"):
        ImexTableau(
            name="bad",
            explicit=((0.5, 0.0), (0.5, 0.4)),
            implicit=((0.5, 0.0), (0.5, 0.4)),
        )


def test_invalid_tableau_is_configuration_error() -> None:
    """Tableau defects are reported as configuration errors."""
    with pytest.raises(ConfigurationError):
        ImexTableau(name="bad", explicit=((1.0,),), implicit=((1.0,),))


# -------------------------------------------------------------------
# Butcher-pair conversion
# -------------------------------------------------------------------


def test_converter_reproduces_closed_form_ars343() -> None:
    """The standard ARS(3,4,3) Butcher pair converts to the closed form."""
    ref = ars343()
    g = ARS343_GAMMA
    (a31, a32, _, _) = ref.explicit[1]
    (a41, a42, a43, _) = ref.explicit[2]
    (b1, b2, _) = ref.implicit[2][:3]

    explicit_a = [
        [0.0, 0.0, 0.0, 0.0],
        [g, 0.0, 0.0, 0.0],
        [a31, a32, 0.0, 0.0],
        [a41, a42, a43, 0.0],
    ]
    implicit_a = [
        [0.0, 0.0, 0.0, 0.0],
        [0.0, g, 0.0, 0.0],
        [0.0, 0.5 * (1.0 - g), g, 0.0],
        [0.0, b1, b2, g],
    ]
    weights = [0.0, b1, b2, g]

    converted = ars_tableau_from_butcher(
        "ars343-converted", explicit_a, weights, implicit_a, weights
    )

    np.testing.assert_allclose(
        converted.explicit_matrix(), ref.explicit_matrix(), rtol=0.0, atol=1e-15
    )
    np.testing.assert_allclose(
        converted.implicit_matrix(), ref.implicit_matrix(), rtol=0.0, atol=1e-15
    )


def test_converter_rejects_non_ars_implicit_first_column() -> None:
    """Implicit matrices with a non-zero first column are not ARS type."""
    with pytest.raises(InvalidTableauError, match="first column"):
        ars_tableau_from_butcher(
            "bad",
            [[0.0, 0.0], [1.0, 0.0]],
            [0.5, 0.5],
            [[0.0, 0.0], [0.5, 0.5]],
            [0.5, 0.5],
        )


def test_converter_rejects_implicit_explicit_diagonal() -> None:
    """Explicit Butcher matrices must be strictly lower triangular."""
    with pytest.raises(InvalidTableauError, match="strictly lower"):
        ars_tableau_from_butcher(
            "bad",
            [[0.5, 0.0], [1.0, 0.0]],
            [0.5, 0.5],
            [[0.0, 0.0], [0.0, 1.0]],
            [0.0, 1.0],
        )


def test_converter_rejects_shape_mismatch() -> None:
    """Weights and matrices must share the stage count."""
    with pytest.raises(InvalidTableauError, match="shapes disagree"):
        ars_tableau_from_butcher(
            "bad",
            [[0.0, 0.0], [1.0, 0.0]],
            [0.5, 0.5, 0.0],
            [[0.0, 0.0], [0.0, 1.0]],
            [0.0, 1.0],
        )


def test_ars222_and_ars443_sizes_and_diagonals() -> None:
    """Converted L-stable schemes have the expected stage counts."""
    tab2 = ars222()
    gamma = 1.0 - 1.0 / math.sqrt(2.0)
    assert tab2.n_stages == 3
    assert tab2.implicit[0][0] == pytest.approx(gamma)
    assert tab2.implicit[1][1] == pytest.approx(gamma)

    tab4 = ars443()
    assert tab4.n_stages == 5
    for s in range(4):
        assert tab4.implicit[s][s] == pytest.approx(0.5)


# -------------------------------------------------------------------
# Lookup
# -------------------------------------------------------------------


def test_get_tableau_is_case_insensitive() -> None:
    """Names are normalized before lookup."""
    assert get_tableau(" ARS343 ") == ars343()


def test_get_tableau_forwards_parameters() -> None:
    """ars343 parameters pass through to the builder."""
    assert get_tableau("ars343", gamma=0.4) == ars343(gamma=0.4)


def test_get_tableau_unknown_name_raises() -> None:
    """Unknown names list the available tableaux."""
    with pytest.raises(ConfigurationError, match="available"):
        get_tableau("rk4")


def test_get_tableau_bad_parameters_raise() -> None:
    """Builders that take no parameters reject them as configuration errors."""
    with pytest.raises(ConfigurationError, match="Invalid parameters"):
        get_tableau("ars222", gamma=0.3)
