"""
decisionhub - Decision engine for visually authored business rules.

Evaluates rule graphs of branch and output nodes against input records,
selects one outcome, and returns an annotated copy of the graph recording
which nodes and edges were taken or pruned.
"""

__version__ = "0.1.0"

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import (
    Diagnostic,
    EvaluationContext,
    EvaluationResult,
    NodeTrace,
    TraversalState,
)
from decisionhub.core.engine import DecisionEngine, evaluate
from decisionhub.core.graph import (
    PREVIOUS,
    AttributeRef,
    ConditionBlock,
    Connector,
    Edge,
    Expression,
    MalformedGraphError,
    Node,
    NodeType,
    OutputField,
    Quantifier,
    RuleGraph,
    SpecialFunction,
)
from decisionhub.core.trace import TraceAnnotator
from decisionhub.evaluation.evaluator import Aggregation, ExpressionEvaluator, Fallback
from decisionhub.evaluation.temporal import TemporalResolver
from decisionhub.service import DecisionService
from decisionhub.store.rules import RuleAccessError, RuleRecord, RuleStore

__all__ = [
    # Version
    "__version__",
    # Engine
    "DecisionEngine",
    "evaluate",
    "EngineConfig",
    # Graph
    "RuleGraph",
    "Node",
    "NodeType",
    "Edge",
    "Quantifier",
    "Connector",
    "ConditionBlock",
    "Expression",
    "OutputField",
    "AttributeRef",
    "SpecialFunction",
    "PREVIOUS",
    "MalformedGraphError",
    # Context
    "EvaluationContext",
    "EvaluationResult",
    "NodeTrace",
    "Diagnostic",
    "TraversalState",
    "TraceAnnotator",
    # Evaluation
    "ExpressionEvaluator",
    "Aggregation",
    "Fallback",
    "TemporalResolver",
    # Store
    "RuleStore",
    "RuleRecord",
    "RuleAccessError",
    "DecisionService",
]
