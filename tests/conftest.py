"""Pytest fixtures for decisionhub tests.

This module provides reusable rule graphs, a graph builder and a fixed clock
for testing the decision engine.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import EvaluationContext
from decisionhub.core.engine import DecisionEngine
from decisionhub.evaluation.evaluator import ExpressionEvaluator

INPUT_ATTRIBUTES = [
    "account_no",
    "loan_duration",
    "date_of_birth",
    "employment_status",
    "annual_income",
    "credit_score",
]


class GraphBuilder:
    """Builds rule graph wire documents in the authoring UI's shape."""

    def __init__(self):
        self.nodes: List[Dict[str, Any]] = []
        self.edges: List[Dict[str, Any]] = []

    @staticmethod
    def expr(left: Optional[str], operator: str, right: Any) -> Dict[str, Any]:
        return {"inputAttribute": left, "operator": operator, "value": right}

    @staticmethod
    def block(*expressions: Dict[str, Any], boolean: Optional[str] = None) -> Dict[str, Any]:
        result = {"multiple": len(expressions) > 1, "expression": list(expressions)}
        if boolean is not None:
            result["boolean"] = boolean
        return result

    def start(self, node_id: str = "1") -> "GraphBuilder":
        self.nodes.append(
            {
                "id": node_id,
                "type": "attributeNode",
                "data": {
                    "label": "Start",
                    "inputAttributes": list(INPUT_ATTRIBUTES),
                    "outputAttributes": ["interest_rate"],
                },
            }
        )
        return self

    def branch(self, node_id: str, *blocks: Dict[str, Any], rule: str = "All") -> "GraphBuilder":
        self.nodes.append(
            {
                "id": node_id,
                "type": "conditionalNode",
                "data": {"label": f"Branch {node_id}", "rule": rule, "conditions": list(blocks)},
            }
        )
        return self

    def output(self, node_id: str, value: Any, field: str = "interest_rate") -> "GraphBuilder":
        self.nodes.append(
            {
                "id": node_id,
                "type": "outputNode",
                "data": {
                    "label": f"Output {node_id}",
                    "outputAttributes": ["interest_rate"],
                    "outputFields": [{"field": field, "value": value}],
                },
            }
        )
        return self

    def edge(self, source: str, target: str, handle: Optional[str] = None) -> "GraphBuilder":
        edge = {
            "id": f"{source}-{handle or 'start'}-{target}",
            "source": source,
            "target": target,
            "animated": False,
            "style": {"strokeWidth": 2},
            "markerEnd": {"type": "arrowclosed", "width": 12, "height": 12},
        }
        if handle is not None:
            edge["sourceHandle"] = handle
        self.edges.append(edge)
        return self

    def build(self) -> Dict[str, Any]:
        return {"nodes": copy.deepcopy(self.nodes), "edges": copy.deepcopy(self.edges)}


@pytest.fixture
def builder() -> GraphBuilder:
    """Create an empty graph builder."""
    return GraphBuilder()


@pytest.fixture
def fixed_now() -> datetime:
    """Evaluation clock used across tests."""
    return datetime(2026, 10, 18, 9, 30, 0)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def engine(config) -> DecisionEngine:
    return DecisionEngine(config)


@pytest.fixture
def evaluator(config) -> ExpressionEvaluator:
    return ExpressionEvaluator(config)


@pytest.fixture
def make_context(fixed_now):
    """Factory fixture for evaluation contexts on the fixed clock.

    Example:
        context = make_context({"credit_score": 800})
    """
    def _create_context(record: Optional[Dict[str, Any]] = None) -> EvaluationContext:
        return EvaluationContext(record or {}, now=fixed_now)

    return _create_context


@pytest.fixture
def simple_graph() -> Dict[str, Any]:
    """Single branch ``credit_score > 750`` with yes and no outputs.

    Nodes:
        - 1: start
        - 2: branch (All)
        - 3: output "low" via yes
        - 4: output "high" via no
    """
    builder = GraphBuilder()
    return (
        builder.start("1")
        .branch("2", builder.block(builder.expr("credit_score", ">", "750")))
        .output("3", "low")
        .output("4", "high")
        .edge("1", "2")
        .edge("2", "3", "yes")
        .edge("2", "4", "no")
        .build()
    )


@pytest.fixture
def fan_out_graph() -> Dict[str, Any]:
    """Branch whose yes edge fans out to candidates A then B.

    Nodes:
        - 1: start
        - 2: branch, always true
        - A: branch ``x > 0`` → output OA
        - B: branch ``y > 0`` → output OB
    """
    builder = GraphBuilder()
    return (
        builder.start("1")
        .branch("2", builder.block(builder.expr("always", "==", "1")))
        .branch("A", builder.block(builder.expr("x", ">", "0")))
        .branch("B", builder.block(builder.expr("y", ">", "0")))
        .output("OA", "a")
        .output("OB", "b")
        .edge("1", "2")
        .edge("2", "A", "yes")
        .edge("2", "B", "yes")
        .edge("A", "OA", "yes")
        .edge("B", "OB", "yes")
        .build()
    )


def _loan_node(node_id: str, node_type: str, data: Dict[str, Any], x: float, y: float) -> Dict[str, Any]:
    payload = {
        "inputAttributes": list(INPUT_ATTRIBUTES),
        "outputAttributes": ["interest_rate"],
        **data,
    }
    return {
        "width": 406,
        "height": 188,
        "id": node_id,
        "type": node_type,
        "data": payload,
        "position": {"x": x, "y": y},
        "selected": False,
        "positionAbsolute": {"x": x, "y": y},
        "dragging": False,
    }


def _loan_edge(edge_id: str, source: str, target: str, handle: Optional[str]) -> Dict[str, Any]:
    edge = {
        "id": edge_id,
        "source": source,
        "target": target,
        "animated": False,
        "style": {"strokeWidth": 3},
        "markerEnd": {"type": "arrowclosed", "width": 12, "height": 12},
    }
    if handle is not None:
        edge["sourceHandle"] = handle
    return edge


@pytest.fixture
def loan_graph() -> Dict[str, Any]:
    """Loan interest rule as stored by the authoring UI.

    Start → "Not under age and high income" (All: age > 18 && monthly
    income > 1,000,000) → "Credit score > 750" (All) → fan-out to loan
    duration checks < 5, > 10 and == 8, each leading to an interest rate.
    """
    def conditional(node_id, label, rule, conditions, x, y):
        return _loan_node(
            node_id, "conditionalNode", {"label": label, "rule": rule, "conditions": conditions}, x, y
        )

    def rate(node_id, value, x, y):
        return _loan_node(
            node_id,
            "outputNode",
            {"label": "Set interest rate", "outputFields": [{"field": "", "value": value}]},
            x,
            y,
        )

    def single(attribute, operator, value):
        return {
            "multiple": False,
            "expression": [{"inputAttribute": attribute, "operator": operator, "value": value}],
        }

    nodes = [
        rate("9", "9", -1215.7, 2251.3),
        rate("8", "8", 1376.2, 2207.6),
        rate("7", "11", 17.5, 2239.3),
        conditional("6", "Loan duration less than 5", "Any", [single("loan_duration", "<", "5")], -100.8, 1660.3),
        conditional("5", "Loan Duration More than 10", "Any", [single("loan_duration", ">", "10")], -1378.0, 1596.3),
        conditional("4", "Loan duration equal to 8", "Any", [single("loan_duration", "==", "8")], 1067.8, 1568.6),
        conditional("3", "Credit Score Greater than 750", "All", [single("credit_score", ">", "750")], 89.6, 1014.3),
        conditional(
            "2",
            "Not Under Age and has High Income",
            "All",
            [
                {
                    "multiple": False,
                    "expression": [
                        {
                            "inputAttribute": "date_diff,current_date,date_of_birth",
                            "operator": ">",
                            "value": "18",
                        }
                    ],
                    "boolean": "&&",
                },
                {
                    "multiple": False,
                    "expression": [
                        {"inputAttribute": "annual_income", "operator": "/", "value": "12"},
                        {"inputAttribute": None, "operator": ">", "value": "1000000"},
                    ],
                },
            ],
            -142.4,
            438.4,
        ),
        _loan_node(
            "1",
            "attributeNode",
            {"label": "Loan Interest Rate", "description": "Set loan interest rate according to user data"},
            260,
            50,
        ),
    ]
    edges = [
        _loan_edge("5-yes-9", "5", "9", "yes"),
        _loan_edge("4-yes-8", "4", "8", "yes"),
        _loan_edge("6-yes-7", "6", "7", "yes"),
        _loan_edge("3-yes-6", "3", "6", "yes"),
        _loan_edge("3-yes-5", "3", "5", "yes"),
        _loan_edge("3-yes-4", "3", "4", "yes"),
        _loan_edge("2-yes-3", "2", "3", "yes"),
        _loan_edge("1-start-2", "1", "2", None),
    ]
    return {"nodes": nodes, "edges": edges}


@pytest.fixture
def loan_applicant() -> Dict[str, Any]:
    """Applicant accepted by the loan rule with an 8 year loan."""
    return {
        "account_no": 4543566,
        "loan_duration": 8,
        "date_of_birth": "2003-11-19",
        "employment_status": "employed",
        "annual_income": 24000000,
        "credit_score": 800,
    }
