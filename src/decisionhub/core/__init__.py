"""Core module for the decisionhub decision engine.

This module provides the rule graph model, the traversal engine and the
trace annotator.
"""

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import (
    Diagnostic,
    EvaluationContext,
    EvaluationResult,
    NodeTrace,
    TraversalState,
)
from decisionhub.core.engine import DecisionEngine, evaluate
from decisionhub.core.graph import MalformedGraphError, RuleGraph
from decisionhub.core.trace import TraceAnnotator

__all__ = [
    "DecisionEngine",
    "evaluate",
    "EngineConfig",
    "RuleGraph",
    "MalformedGraphError",
    "EvaluationContext",
    "EvaluationResult",
    "NodeTrace",
    "Diagnostic",
    "TraversalState",
    "TraceAnnotator",
]
