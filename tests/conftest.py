"""
Validity Graph Test Configuration and Fixtures

Graphs are built through the engine so ranks and caches start consistent.
"""

import pytest
from types import SimpleNamespace

from validity.engine import ValidityEngine
from validity.graph import Directive


def _assert_consistent(engine: ValidityEngine) -> None:
    """Every cached value matches the validity formula."""
    for node in engine.graph.nodes():
        expected = node.directive is Directive.EXPLICIT_VALID or any(
            engine.is_valid(p) for p in node.parents
        )
        assert engine.is_valid(node.node_id) == expected, (
            f"node {node.display_name}: cached {engine.is_valid(node.node_id)}, expected {expected}"
        )


@pytest.fixture
def assert_consistent():
    """Checker for the validity formula over a whole engine."""
    return _assert_consistent


@pytest.fixture
def engine():
    """Empty engine with default configuration."""
    return ValidityEngine()


@pytest.fixture
def chain(engine):
    """A -> B -> C, all directives unset."""
    a = engine.add_node(label="A")
    b = engine.add_node(parents=[a], label="B")
    c = engine.add_node(parents=[b], label="C")
    return SimpleNamespace(engine=engine, a=a, b=b, c=c)


@pytest.fixture
def diamond(engine):
    """top -> left, top -> right, left -> bottom, right -> bottom."""
    top = engine.add_node(label="top")
    left = engine.add_node(parents=[top], label="left")
    right = engine.add_node(parents=[top], label="right")
    bottom = engine.add_node(parents=[left, right], label="bottom")
    return SimpleNamespace(engine=engine, top=top, left=left, right=right, bottom=bottom)
