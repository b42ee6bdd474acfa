# imex_engine/src/imex_engine/coefficients.py
"""Stage coefficient derivation for IMEX tableaux.

Each explicit sub-step of the engine computes

    target = sum_k w_k * buffer[i_k] + (E[s-1][s-1] * dt) * F(buffer[source])

so the combination ``sum_k w_k * buffer[i_k]`` must rebuild every term of
stage ``s`` except the newest explicit one. Earlier explicit and implicit
tendencies are not stored; they are recovered from differences of buffers:

    dt * G(Y_p)     = (corrected_p - tendency_p) / I[p-1][p-1]
    dt * F(Y_{p-1}) = (tendency_p - combo_p) / E[p-1][p-1]

where ``combo_p`` is the combination used by stage ``p``. Substituting these
gives a direct combination over the slots written so far, plus a copy of each
earlier stage combination scaled by ``-E[s-1][p-1] / E[p-1][p-1]``. The
substitution is applied in increasing stage order so every combination it
folds in is already fully reduced.

Buffer slot layout used by the combinations: slot 0 holds the incoming state,
slot ``2p - 1`` the explicit tendency of stage ``p`` and slot ``2p`` its
implicit-corrected state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import raise_invalid_tableau

if TYPE_CHECKING:
    from .tableau import ImexTableau


_COMBINATION_LENGTH_ERROR = (
    "indices and weights must have equal length; got {n_idx} and {n_w}"
)
_COMBINATION_EMPTY_ERROR = "a stage combination needs at least one term"
_COMBINATION_INDEX_ERROR = "buffer indices must be non-negative; got {indices}"
_STAGE_RANGE_ERROR = "stage must be in [1, {n_stages}]; got {stage}"


# =============================================================================
# Data containers
# =============================================================================


@dataclass(frozen=True, slots=True)
class StageCombination:
    """Sparse linear combination of buffer slots.

    Represents ``sum_k weights[k] * buffer[indices[k]]``.

    Attributes:
        indices: Buffer slot indices.
        weights: Real weights, parallel to ``indices``.
    """

    indices: tuple[int, ...]
    weights: tuple[float, ...]

    def __post_init__(self) -> None:
        indices = tuple(int(i) for i in self.indices)
        weights = tuple(float(w) for w in self.weights)
        if len(indices) != len(weights):
            raise ValueError(
                _COMBINATION_LENGTH_ERROR.format(n_idx=len(indices), n_w=len(weights))
            )
        if not indices:
            raise ValueError(_COMBINATION_EMPTY_ERROR)
        if any(i < 0 for i in indices):
            raise ValueError(_COMBINATION_INDEX_ERROR.format(indices=indices))
        object.__setattr__(self, "indices", indices)
        object.__setattr__(self, "weights", weights)

    @classmethod
    def copy(cls, index: int) -> StageCombination:
        """Return the single-term combination ``1.0 * buffer[index]``."""
        return cls(indices=(index,), weights=(1.0,))

    def __len__(self) -> int:
        return len(self.indices)

    @property
    def total_weight(self) -> float:
        """Sum of the weights (1.0 for a consistent stage combination)."""
        return math.fsum(self.weights)

    @property
    def max_index(self) -> int:
        """Largest buffer index referenced."""
        return max(self.indices)


@dataclass(frozen=True, slots=True)
class StageCoefficients:
    """Coefficients derived once per tableau.

    Attributes:
        explicit_diagonal: Explicit diagonal coefficient per stage, length S.
        implicit_diagonal: Implicit diagonal coefficient per stage, length S.
            The terminal entry is defined but unused by the sequencer.
        combinations: Explicit-input combination per stage, length S. Stage 1
            is the copy of slot 0.
    """

    explicit_diagonal: tuple[float, ...]
    implicit_diagonal: tuple[float, ...]
    combinations: tuple[StageCombination, ...]

    @property
    def n_stages(self) -> int:
        """Number of stages S."""
        return len(self.explicit_diagonal)

    @property
    def terminal_implicit_diagonal(self) -> float:
        """Implicit diagonal of the terminal stage (defined but unused)."""
        return self.implicit_diagonal[-1]

    def combination(self, stage: int) -> StageCombination:
        """
        Return the combination for a 1-based stage index.

        Args:
            stage: Stage index in [1, S].

        Raises:
            IndexError: If stage is out of range.

        Returns:
            The stage combination.
        """
        if not (1 <= stage <= self.n_stages):
            raise IndexError(
                _STAGE_RANGE_ERROR.format(n_stages=self.n_stages, stage=stage)
            )
        return self.combinations[stage - 1]


# =============================================================================
# Derivation
# =============================================================================


def _check_divisors(tableau: ImexTableau) -> None:
    """Reject tableaux whose non-terminal diagonals contain zeros."""
    exp = tableau.explicit
    imp = tableau.implicit
    for p in range(tableau.n_stages - 1):
        if exp[p][p] == 0.0:
            raise_invalid_tableau(
                tableau.name,
                detail=f"explicit diagonal of stage {p + 1} is zero and is "
                "required as a divisor",
            )
        if imp[p][p] == 0.0:
            raise_invalid_tableau(
                tableau.name,
                detail=f"implicit diagonal of stage {p + 1} is zero and is "
                "required as a divisor",
            )


def _direct_weights(tableau: ImexTableau, stage: int) -> list[float]:
    """Weights of the stage combination before recursive substitution.

    Args:
        tableau: Source tableau.
        stage: 1-based stage index, at least 2.

    Returns:
        List of ``2 * (stage - 1) + 1`` weights over slots 0..2*(stage-1).
    """
    exp = tableau.explicit
    imp = tableau.implicit
    row = stage - 1

    e_ratio = exp[row][0] / exp[0][0]
    i_ratio = imp[row][0] / imp[0][0]
    weights = [1.0 - e_ratio, e_ratio - i_ratio, i_ratio]

    for p in range(2, stage):
        col = p - 1
        e_ratio = exp[row][col] / exp[col][col]
        i_ratio = imp[row][col] / imp[col][col]
        weights.extend((e_ratio - i_ratio, i_ratio))

    return weights


def derive_stage_coefficients(tableau: ImexTableau) -> StageCoefficients:
    """
    Derive diagonal coefficients and stage combinations from a tableau.

    Args:
        tableau: IMEX tableau in the engine layout.

    Raises:
        InvalidTableauError: If a diagonal coefficient used as a divisor is zero.

    Returns:
        StageCoefficients for the tableau.
    """
    _check_divisors(tableau)

    n_stages = tableau.n_stages
    exp = tableau.explicit

    explicit_diagonal = tuple(exp[s][s] for s in range(n_stages))
    implicit_diagonal = tuple(tableau.implicit[s][s] for s in range(n_stages))

    combinations: list[StageCombination] = [StageCombination.copy(0)]
    for stage in range(2, n_stages + 1):
        row = stage - 1
        weights = _direct_weights(tableau, stage)

        # Recursive elimination of F(Y_{p-1}) for every prior stage p >= 2.
        for p in range(2, stage):
            col = p - 1
            scale = -exp[row][col] / exp[col][col]
            prior = combinations[p - 1].weights
            for k, w in enumerate(prior):
                weights[k] += scale * w

        combinations.append(
            StageCombination(indices=tuple(range(len(weights))), weights=tuple(weights))
        )

    return StageCoefficients(
        explicit_diagonal=explicit_diagonal,
        implicit_diagonal=implicit_diagonal,
        combinations=tuple(combinations),
    )
