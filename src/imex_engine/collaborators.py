"""Capability interfaces the time-integration core depends on.

The sequencer never touches state arrays. It issues calls against four narrow
protocols, each addressing buffers only by slot index:

- ExplicitTendencyProvider: combine buffers, add a scaled explicit tendency.
- ImplicitCorrector: combine buffers, solve against a scaled implicit operator.
- SubstagePostProcessor: in-place stabilization of one field category.
- AfterSubcycleCombiner: final dissipation pass writing the next state.

Implementations may parallelize internally but must leave the buffer pool
fully settled before returning.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .coefficients import StageCombination


class FieldCategory(StrEnum):
    """Field groups that are post-processed separately."""

    STATE = "state"
    TRACERS = "tracers"


@runtime_checkable
class ExplicitTendencyProvider(Protocol):
    """Explicit combiner contract."""

    def step_explicit_combine(
        self,
        combination: StageCombination,
        source: int,
        target: int,
        time: float,
        scaled_step: float,
    ) -> None:
        """Write ``sum(combination) + scaled_step * F(buffer[source], time)``.

        Args:
            combination: Weighted buffer combination to evaluate first.
            source: Buffer at which the explicit operator is evaluated.
            target: Buffer receiving the result.
            time: Simulation time.
            scaled_step: Explicit diagonal coefficient times the step size.
        """
        ...


@runtime_checkable
class ImplicitCorrector(Protocol):
    """Implicit combiner contract."""

    def step_implicit_combine(
        self,
        combination: StageCombination,
        target: int,
        time: float,
        scaled_step: float,
    ) -> None:
        """Solve ``y = sum(combination) + scaled_step * G(y, time)`` into target.

        Args:
            combination: Weighted buffer combination forming the right side.
            target: Buffer receiving the solution.
            time: Simulation time.
            scaled_step: Implicit diagonal coefficient times the step size.

        Raises:
            SolverFailureError: If the solve does not converge.
        """
        ...


@runtime_checkable
class SubstagePostProcessor(Protocol):
    """Stabilization hook applied after every explicit sub-step."""

    def post_process_substage(self, index: int, category: FieldCategory) -> None:
        """Stabilize one field category of one buffer in place (idempotent)."""
        ...


@runtime_checkable
class AfterSubcycleCombiner(Protocol):
    """Closure pass run once per step after the last stage."""

    def step_after_subcycle_combine(
        self,
        source: int,
        target: int,
        time: float,
        step: float,
    ) -> None:
        """Apply end-of-step dissipation to ``source`` and write ``target``."""
        ...
