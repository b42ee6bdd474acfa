# imex_engine/src/imex_engine/timestep_scheme.py
"""Stage sequencer for additive IMEX Runge-Kutta steps.

:class:`ImexTimestepScheme` advances one step of size ``dt`` by issuing, for
each stage ``s = 1..S``:

1. an explicit sub-step: the stage combination plus
   ``E[s-1][s-1] * dt * F`` evaluated at the previous corrected state,
2. one post-process call per field category on the fresh tendency,
3. an implicit sub-step on a copy of the tendency with scaled step
   ``I[s-1][s-1] * dt`` (skipped for the terminal stage),

followed by a single closure call that writes the next state to slot 0.

The sequencer holds no array state. Everything it needs is derived once from
the tableau at construction (:mod:`imex_engine.coefficients`) and laid out as a
verified plan (:mod:`imex_engine.slots`). Collaborator failures propagate
unchanged; there is no retry at this level.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from .coefficients import derive_stage_coefficients
from .collaborators import AfterSubcycleCombiner, FieldCategory
from .errors import ConfigurationError, ErrorCode, SolverFailureError
from .slots import OperationKind, build_step_plan

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .coefficients import StageCoefficients
    from .collaborators import (
        ExplicitTendencyProvider,
        ImplicitCorrector,
        SubstagePostProcessor,
    )
    from .slots import StageOperation, StepPlan
    from .tableau import ImexTableau


logger = logging.getLogger(__name__)


_DEFAULT_CATEGORIES: tuple[FieldCategory, ...] = (
    FieldCategory.STATE,
    FieldCategory.TRACERS,
)

_NO_AFTER_SUBCYCLE_ERROR = (
    "after_subcycle was not given and the explicit provider {provider!r} does "
    "not implement step_after_subcycle_combine"
)
_NON_FINITE_STEP_ERROR = "step_size must be finite; got {step_size}"
_STAGE_FAILURE_NOTE = "raised during implicit sub-step of stage {stage}/{n_stages}"


class ImexTimestepScheme:
    """Multi-stage IMEX step driven by a tableau and four collaborators."""

    def __init__(  # noqa: PLR0913
        self,
        tableau: ImexTableau,
        *,
        explicit: ExplicitTendencyProvider,
        implicit: ImplicitCorrector,
        post_processor: SubstagePostProcessor,
        after_subcycle: AfterSubcycleCombiner | None = None,
        categories: Sequence[FieldCategory] = _DEFAULT_CATEGORIES,
    ) -> None:
        """
        Initialize ImexTimestepScheme.

        Args:
            tableau: IMEX tableau in the engine layout.
            explicit: Explicit combiner.
            implicit: Implicit combiner.
            post_processor: Substage stabilization hook.
            after_subcycle: Closure combiner. Defaults to ``explicit`` when it
                implements the closure contract.
            categories: Field categories post-processed after each explicit
                sub-step, in call order.

        Raises:
            ConfigurationError: If no closure combiner is available.
            InvalidTableauError: If the tableau cannot drive the recovery
                formulas.
        """
        if after_subcycle is None:
            if not isinstance(explicit, AfterSubcycleCombiner):
                raise ConfigurationError(
                    _NO_AFTER_SUBCYCLE_ERROR.format(provider=explicit),
                    code=ErrorCode.INVALID_CONFIG,
                )
            after_subcycle = explicit

        self._tableau = tableau
        self._explicit = explicit
        self._implicit = implicit
        self._post_processor = post_processor
        self._after_subcycle = after_subcycle
        self._categories = tuple(FieldCategory(c) for c in categories)

        self._coefficients = derive_stage_coefficients(tableau)
        self._plan = build_step_plan(self._coefficients, self._categories)

        logger.debug(
            "Built %s scheme: %d stages, %d buffers, %d calls per step",
            tableau.name,
            self.n_stages,
            self.required_buffers,
            len(self._plan),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def tableau(self) -> ImexTableau:
        """Tableau the scheme was built from."""
        return self._tableau

    @property
    def coefficients(self) -> StageCoefficients:
        """Derived stage coefficients."""
        return self._coefficients

    @property
    def plan(self) -> StepPlan:
        """Verified per-step call plan."""
        return self._plan

    @property
    def n_stages(self) -> int:
        """Number of stages S."""
        return self._coefficients.n_stages

    @property
    def required_buffers(self) -> int:
        """Number of buffer slots the collaborators must provide (2S - 1)."""
        return self._plan.arena.size

    @property
    def categories(self) -> tuple[FieldCategory, ...]:
        """Post-processed field categories."""
        return self._categories

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _dispatch(self, op: StageOperation, time: float, step_size: float) -> None:
        kind = op.kind
        if kind is OperationKind.EXPLICIT:
            self._explicit.step_explicit_combine(
                op.combination,
                op.source,
                op.target,
                time,
                op.step_scale * step_size,
            )
        elif kind is OperationKind.POST_PROCESS:
            self._post_processor.post_process_substage(op.target, op.category)
        elif kind is OperationKind.IMPLICIT:
            try:
                self._implicit.step_implicit_combine(
                    op.combination,
                    op.target,
                    time,
                    op.step_scale * step_size,
                )
            except SolverFailureError as exc:
                if exc.stage is None:
                    exc.stage = op.stage
                exc.add_note(
                    _STAGE_FAILURE_NOTE.format(stage=op.stage, n_stages=self.n_stages)
                )
                logger.warning(
                    "%s: implicit solve failed at stage %s (t=%g, dt=%g): %s",
                    self._tableau.name,
                    op.stage,
                    time,
                    step_size,
                    exc,
                )
                raise
        else:
            self._after_subcycle.step_after_subcycle_combine(
                op.source, op.target, time, step_size
            )

    def step(
        self,
        is_first_step: bool,  # noqa: FBT001
        is_last_step: bool,  # noqa: FBT001
        time: float,
        step_size: float,
    ) -> None:
        """
        Advance slot 0 by one step.

        Args:
            is_first_step: Whether this is the first step of a run (logged only).
            is_last_step: Whether this is the last step of a run (logged only).
            time: Simulation time, passed unchanged to every collaborator.
            step_size: Step size dt.

        Raises:
            ValueError: If step_size is not finite.
            SolverFailureError: If an implicit sub-step fails; slot 0 still
                holds the incoming state.
        """
        if not math.isfinite(step_size):
            raise ValueError(_NON_FINITE_STEP_ERROR.format(step_size=step_size))

        logger.debug(
            "%s step t=%g dt=%g first=%s last=%s",
            self._tableau.name,
            time,
            step_size,
            is_first_step,
            is_last_step,
        )

        for op in self._plan.operations:
            self._dispatch(op, time, step_size)
