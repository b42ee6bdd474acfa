"""Sybil collection of the Markdown documentation under docs/."""

from pathlib import Path
from typing import Any

import numpy as np
from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser

from imex_engine.matrix_ops import clear_implicit_solver_cache


def documentation_setup(namespace: dict[str, Any]) -> None:
    """Start every document with an empty solver cache and numpy in scope."""
    clear_implicit_solver_cache()
    namespace["np"] = np


def documentation_teardown(namespace: dict[str, Any]) -> None:  # noqa: ARG001
    """Drop factorizations cached while running a document."""
    clear_implicit_solver_cache()


pytest_collect_file = Sybil(
    parsers=[
        PythonCodeBlockParser(),
        SkipParser(),
    ],
    path=str(Path(__file__).parent / "docs"),
    pattern="**/*.md",
    setup=documentation_setup,
    teardown=documentation_teardown,
).pytest()
