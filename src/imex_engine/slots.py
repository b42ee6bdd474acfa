# imex_engine/src/imex_engine/slots.py
"""Buffer slot allocation and the verified per-step operation plan.

An ``S``-stage scheme works on ``2S - 1`` buffer slots:

    slot 0          incoming state, later the authoritative next state
    slot 2s - 1     explicit tendency of stage s        (s < S)
    slot 2s         implicit-corrected state of stage s (s < S)

The terminal stage has no implicit correction. Its tendency reuses slot 1,
whose only readers are stage combinations that are fully evaluated before the
terminal explicit sub-step writes. Slot 0 is overwritten only by the closure
pass, so a failure anywhere in the step leaves the incoming state intact.

:func:`build_step_plan` lays out every collaborator call of one step, and
:func:`verify_step_plan` replays the plan against a model of slot occupancy,
so aliasing mistakes surface at construction instead of corrupting a run.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from .coefficients import StageCombination
from .errors import BufferPreconditionError, ErrorCode, raise_buffer_precondition

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .coefficients import StageCoefficients
    from .collaborators import FieldCategory


_MIN_STAGES: Final[int] = 2

_N_STAGES_ERROR = "n_stages must be at least {min_stages}; got {n_stages}"
_STAGE_OOB_ERROR = "stage {stage} is out of range for a {n_stages}-stage arena"
_INDEX_OOB_ERROR = "slot index {index} is out of range for an arena of size {size}"
_NO_TERMINAL_CORRECTION_ERROR = (
    "stage {stage} is the terminal stage and has no implicit-corrected slot"
)


# =============================================================================
# Slot roles and arena
# =============================================================================


class SlotRole(StrEnum):
    """Logical quantity held by a buffer slot."""

    INITIAL = "initial"
    TENDENCY = "tendency"
    CORRECTED = "corrected"
    NEXT_STATE = "next_state"


@dataclass(frozen=True, slots=True)
class SlotRef:
    """Reference to a logical quantity.

    Attributes:
        role: Quantity kind.
        stage: 1-based stage for TENDENCY/CORRECTED, 0 otherwise.
    """

    role: SlotRole
    stage: int = 0

    def __str__(self) -> str:
        if self.role in {SlotRole.TENDENCY, SlotRole.CORRECTED}:
            return f"{self.role}[{self.stage}]"
        return str(self.role)


INITIAL: Final[SlotRef] = SlotRef(SlotRole.INITIAL)
NEXT_STATE: Final[SlotRef] = SlotRef(SlotRole.NEXT_STATE)


def tendency(stage: int) -> SlotRef:
    """Reference to the explicit tendency of a stage."""
    return SlotRef(SlotRole.TENDENCY, stage)


def corrected(stage: int) -> SlotRef:
    """Reference to the implicit-corrected state of a stage."""
    return SlotRef(SlotRole.CORRECTED, stage)


class SlotArena:
    """Fixed-size arena mapping logical quantities to buffer slots."""

    def __init__(self, n_stages: int) -> None:
        """
        Initialize SlotArena.

        Args:
            n_stages: Number of tableau stages S.

        Raises:
            ValueError: If n_stages is below 2.
        """
        if n_stages < _MIN_STAGES:
            raise ValueError(
                _N_STAGES_ERROR.format(min_stages=_MIN_STAGES, n_stages=n_stages)
            )
        self.n_stages = int(n_stages)
        self.size = 2 * self.n_stages - 1

    def __repr__(self) -> str:
        return f"SlotArena(n_stages={self.n_stages}, size={self.size})"

    def _check_stage(self, stage: int) -> None:
        if not (1 <= stage <= self.n_stages):
            raise IndexError(
                _STAGE_OOB_ERROR.format(stage=stage, n_stages=self.n_stages)
            )

    def index(self, ref: SlotRef) -> int:
        """
        Resolve a logical quantity to its slot index.

        Args:
            ref: Quantity to resolve.

        Raises:
            BufferPreconditionError: If the terminal stage's corrected state is
                requested.

        Returns:
            Slot index in [0, size).
        """
        if ref.role in {SlotRole.INITIAL, SlotRole.NEXT_STATE}:
            return 0

        self._check_stage(ref.stage)
        if ref.role is SlotRole.TENDENCY:
            if ref.stage == self.n_stages:
                return 1
            return 2 * ref.stage - 1

        if ref.stage == self.n_stages:
            raise BufferPreconditionError(
                _NO_TERMINAL_CORRECTION_ERROR.format(stage=ref.stage),
                code=ErrorCode.BUFFER_PRECONDITION,
            )
        return 2 * ref.stage

    def role_at(self, index: int) -> SlotRef:
        """
        Return the quantity a stage combination means by a slot index.

        Combinations are derived over the non-aliased layout, so index ``k``
        always denotes the initial state (k = 0) or a non-terminal stage's
        tendency (odd k) or corrected state (even k).

        Args:
            index: Slot index.

        Raises:
            IndexError: If index is outside the arena.

        Returns:
            The SlotRef for that index.
        """
        if not (0 <= index < self.size):
            raise IndexError(_INDEX_OOB_ERROR.format(index=index, size=self.size))
        if index == 0:
            return INITIAL
        stage = (index + 1) // 2
        if index % 2 == 1:
            return tendency(stage)
        return corrected(stage)


# =============================================================================
# Operation plan
# =============================================================================


class OperationKind(StrEnum):
    """Collaborator call kinds issued by the sequencer."""

    EXPLICIT = "explicit"
    POST_PROCESS = "post_process"
    IMPLICIT = "implicit"
    AFTER_SUBCYCLE = "after_subcycle"


@dataclass(frozen=True, slots=True)
class StageOperation:
    """One collaborator call of a step.

    Attributes:
        kind: Call kind.
        stage: 1-based stage, or None for the closure pass.
        target: Slot written.
        writes: Quantity the target holds afterwards.
        reads: Quantities read, in order.
        combination: Buffer combination (explicit/implicit calls).
        source: Slot at which the explicit operator is evaluated, or the
            closure input.
        step_scale: Multiplier applied to the step size.
        category: Field category (post-process calls).
    """

    kind: OperationKind
    stage: int | None
    target: int
    writes: SlotRef
    reads: tuple[SlotRef, ...]
    combination: StageCombination | None = None
    source: int | None = None
    step_scale: float = 1.0
    category: FieldCategory | None = None


@dataclass(frozen=True, slots=True)
class StepPlan:
    """Ordered collaborator calls for one step.

    Attributes:
        arena: Slot arena the plan addresses.
        operations: Calls in execution order.
    """

    arena: SlotArena
    operations: tuple[StageOperation, ...]

    def __len__(self) -> int:
        return len(self.operations)

    def for_stage(self, stage: int | None) -> tuple[StageOperation, ...]:
        """Return the operations belonging to one stage (None: closure)."""
        return tuple(op for op in self.operations if op.stage == stage)


def build_step_plan(
    coefficients: StageCoefficients,
    categories: Sequence[FieldCategory],
) -> StepPlan:
    """
    Build and verify the operation plan for one step.

    Args:
        coefficients: Derived stage coefficients.
        categories: Field categories post-processed after each explicit call.

    Returns:
        Verified StepPlan.
    """
    n_stages = coefficients.n_stages
    arena = SlotArena(n_stages)
    operations: list[StageOperation] = []

    for stage in range(1, n_stages + 1):
        combination = coefficients.combination(stage)
        source_ref = INITIAL if stage == 1 else corrected(stage - 1)
        tendency_ref = tendency(stage)
        tendency_idx = arena.index(tendency_ref)

        reads = tuple(arena.role_at(i) for i in combination.indices)
        operations.append(
            StageOperation(
                kind=OperationKind.EXPLICIT,
                stage=stage,
                target=tendency_idx,
                writes=tendency_ref,
                reads=(*reads, source_ref),
                combination=combination,
                source=arena.index(source_ref),
                step_scale=coefficients.explicit_diagonal[stage - 1],
            )
        )

        operations.extend(
            StageOperation(
                kind=OperationKind.POST_PROCESS,
                stage=stage,
                target=tendency_idx,
                writes=tendency_ref,
                reads=(tendency_ref,),
                category=category,
            )
            for category in categories
        )

        if stage == n_stages:
            break

        corrected_ref = corrected(stage)
        operations.append(
            StageOperation(
                kind=OperationKind.IMPLICIT,
                stage=stage,
                target=arena.index(corrected_ref),
                writes=corrected_ref,
                reads=(tendency_ref,),
                combination=StageCombination.copy(tendency_idx),
                step_scale=coefficients.implicit_diagonal[stage - 1],
            )
        )

    final_ref = tendency(n_stages)
    operations.append(
        StageOperation(
            kind=OperationKind.AFTER_SUBCYCLE,
            stage=None,
            target=arena.index(NEXT_STATE),
            writes=NEXT_STATE,
            reads=(final_ref,),
            source=arena.index(final_ref),
        )
    )

    plan = StepPlan(arena=arena, operations=tuple(operations))
    verify_step_plan(plan)
    return plan


def _read_indices(op: StageOperation, arena: SlotArena) -> tuple[int, ...]:
    """Slot indices an operation actually touches for its reads."""
    if op.combination is not None:
        indices = op.combination.indices
        if op.kind is OperationKind.EXPLICIT and op.source is not None:
            return (*indices, op.source)
        return indices
    if op.source is not None:
        return (op.source,)
    return tuple(arena.index(ref) for ref in op.reads)


def verify_step_plan(plan: StepPlan) -> None:
    """
    Replay a plan against slot occupancy and check read-before-write order.

    Slot 0 starts out holding the incoming state; every other slot starts
    empty. Each read must find exactly the quantity it expects in its slot and
    each write must target the slot its quantity maps to.

    Args:
        plan: Plan to verify.

    Raises:
        BufferPreconditionError: On any out-of-range, stale or misplaced slot.
    """
    arena = plan.arena
    occupant: dict[int, SlotRef] = {0: INITIAL}

    for op in plan.operations:
        indices = _read_indices(op, arena)
        if len(indices) != len(op.reads):
            raise_buffer_precondition(
                index=-1, expected=f"{len(op.reads)} reads", found=len(indices)
            )
        for idx, ref in zip(indices, op.reads):
            if not (0 <= idx < arena.size):
                raise_buffer_precondition(index=idx, expected=ref, found="no slot")
            found = occupant.get(idx)
            if found != ref:
                raise_buffer_precondition(index=idx, expected=ref, found=found)

        if not (0 <= op.target < arena.size):
            raise_buffer_precondition(
                index=op.target, expected=op.writes, found="no slot"
            )
        if arena.index(op.writes) != op.target:
            raise_buffer_precondition(
                index=op.target,
                expected=f"slot {arena.index(op.writes)} for {op.writes}",
                found=f"write to slot {op.target}",
            )
        occupant[op.target] = op.writes
