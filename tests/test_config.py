# tests/test_config.py
"""Unit tests for imex_engine.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from imex_engine.buffer_pool import BufferPool, BufferPoolOptions
from imex_engine.collaborators import FieldCategory
from imex_engine.config import SchemeConfig
from imex_engine.driver import RetryPolicy
from imex_engine.errors import ConfigurationError, ErrorCode
from imex_engine.linear_dynamics import LinearImexDynamics, SubstageFilter
from imex_engine.tableau import ars343, ars443


def test_defaults_build_ars343() -> None:
    """An empty mapping yields the default L-stable ARS(3,4,3)."""
    cfg = SchemeConfig.from_mapping({})
    assert cfg.tableau == "ars343"
    assert cfg.tableau_params() == {}

    assert cfg.to_tableau() == ars343()
    assert cfg.categories == (FieldCategory.STATE, FieldCategory.TRACERS)


def test_named_tableau_and_params() -> None:
    """Named tableaux and ARS(3,4,3) parameters flow through to the builder."""
    assert SchemeConfig.from_mapping({"tableau": "ars443"}).to_tableau().n_stages == (
        ars443().n_stages
    )

    cfg = SchemeConfig.from_mapping({"gamma": 0.5})
    assert cfg.tableau_params() == {"gamma": 0.5}
    assert cfg.to_tableau().implicit[0][0] == pytest.approx(0.5)


@pytest.mark.parametrize(
    "data",
    [
        {"tableau": "ars222", "gamma": 0.4},
        {"tableau": "rk4"},
        {"max_halvings": -1},
        {"gamma": 1.5},
        {"unknown_field": 1},
        {"categories": ["bogus"]},
    ],
)
def test_invalid_mappings_raise_configuration_error(data: dict) -> None:
    """Invalid mappings surface as ConfigurationError with the pydantic detail."""
    with pytest.raises(ConfigurationError, match="Invalid imex_engine") as ei:
        SchemeConfig.from_mapping(data)
    assert ei.value.code is ErrorCode.INVALID_CONFIG
    assert isinstance(ei.value.__cause__, ValidationError)


def test_config_is_frozen() -> None:
    """Validated configs are immutable."""
    cfg = SchemeConfig()
    with pytest.raises(ValidationError):
        cfg.max_halvings = 3  # type: ignore[misc]


def test_retry_policy_from_config() -> None:
    """max_halvings maps onto the driver retry policy."""
    assert SchemeConfig(max_halvings=2).to_retry_policy() == RetryPolicy(
        max_halvings=2
    )


def test_build_scheme_uses_configured_categories() -> None:
    """build_scheme wires the tableau and category order into the scheme."""
    cfg = SchemeConfig.from_mapping({"tableau": "ars443", "categories": ["tracers"]})
    tableau = cfg.to_tableau()
    pool = BufferPool(
        2 * tableau.n_stages - 1,
        1,
        (3,),
        options=BufferPoolOptions(n_tracers=1),
    )
    dyn = LinearImexDynamics(pool)
    scheme = cfg.build_scheme(
        explicit=dyn,
        implicit=dyn,
        post_processor=SubstageFilter(pool),
    )
    assert scheme.tableau.name == "ars443"
    assert scheme.categories == (FieldCategory.TRACERS,)
    assert scheme.required_buffers == len(pool)
