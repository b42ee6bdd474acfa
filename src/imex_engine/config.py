# imex_engine/src/imex_engine/config.py
"""Configuration model for building schemes from mappings.

This module defines the pydantic-facing configuration used when a scheme is
described by a dict or YAML document, and translates it into native objects
(:class:`ImexTableau`, :class:`RetryPolicy`, :class:`ImexTimestepScheme`).

Notes:
    - Unknown fields are rejected (`extra="forbid"`) so typos surface early.
    - The ARS(3,4,3) parameters ``gamma``, ``a42`` and ``a43`` are only valid
      together with ``tableau="ars343"``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .collaborators import FieldCategory
from .driver import RetryPolicy
from .errors import invalid_config_error
from .tableau import get_tableau
from .timestep_scheme import ImexTimestepScheme

if TYPE_CHECKING:
    from .collaborators import (
        AfterSubcycleCombiner,
        ExplicitTendencyProvider,
        ImplicitCorrector,
        SubstagePostProcessor,
    )
    from .tableau import ImexTableau

TableauName = Literal["ars222", "ars343", "ars443"]

_ARS343_ONLY_ERROR = "parameters {params} are only accepted with tableau 'ars343'"


class SchemeConfig(BaseModel):
    """Configuration schema for an IMEX scheme.

    Notes:
        - ``categories`` controls which field categories are post-processed,
          in call order.
        - ``max_halvings`` configures the driver retry policy, not the scheme.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tableau: TableauName = Field(
        default="ars343",
        description="Named IMEX tableau",
    )

    # ARS(3,4,3) parameters (defaults are the L-stable values)
    gamma: float | None = Field(default=None, gt=0.0, lt=1.0)
    a42: float | None = None
    a43: float | None = None

    categories: tuple[FieldCategory, ...] = Field(
        default=(FieldCategory.STATE, FieldCategory.TRACERS),
        description="Field categories post-processed after each explicit sub-step",
    )

    max_halvings: int = Field(
        default=0,
        ge=0,
        description="Driver retry depth after a solver failure",
    )

    @model_validator(mode="after")
    def _check_tableau_params(self) -> SchemeConfig:
        params = self.tableau_params()
        if params and self.tableau != "ars343":
            raise ValueError(_ARS343_ONLY_ERROR.format(params=sorted(params)))
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SchemeConfig:
        """Validate a mapping into a SchemeConfig.

        Args:
            data: Raw configuration mapping.

        Returns:
            Validated SchemeConfig.

        Raises:
            ConfigurationError: If validation fails.
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            missing = [
                ".".join(str(p) for p in err["loc"])
                for err in exc.errors()
                if err["type"] == "missing"
            ]
            raise invalid_config_error(missing=missing, detail=str(exc)) from exc

    def tableau_params(self) -> dict[str, float]:
        """Return the explicitly set builder parameters."""
        values = {"gamma": self.gamma, "a42": self.a42, "a43": self.a43}
        return {k: v for k, v in values.items() if v is not None}

    def to_tableau(self) -> ImexTableau:
        """Build the configured tableau.

        Returns:
            ImexTableau instance.
        """
        return get_tableau(self.tableau, **self.tableau_params())

    def to_retry_policy(self) -> RetryPolicy:
        """Build the driver retry policy.

        Returns:
            RetryPolicy instance.
        """
        return RetryPolicy(max_halvings=self.max_halvings)

    def build_scheme(
        self,
        *,
        explicit: ExplicitTendencyProvider,
        implicit: ImplicitCorrector,
        post_processor: SubstagePostProcessor,
        after_subcycle: AfterSubcycleCombiner | None = None,
    ) -> ImexTimestepScheme:
        """Build a scheme with the configured tableau and categories.

        Args:
            explicit: Explicit combiner.
            implicit: Implicit combiner.
            post_processor: Substage stabilization hook.
            after_subcycle: Optional closure combiner.

        Returns:
            Constructed ImexTimestepScheme.
        """
        return ImexTimestepScheme(
            self.to_tableau(),
            explicit=explicit,
            implicit=implicit,
            post_processor=post_processor,
            after_subcycle=after_subcycle,
            categories=self.categories,
        )
