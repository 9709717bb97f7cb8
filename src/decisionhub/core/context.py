"""Evaluation context for the decision engine.

This module provides the per-call state that tracks the input record, the
evaluation clock, node decisions, taken and pruned edges, and diagnostics
throughout one traversal of a rule graph.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from decisionhub.core.graph import NodeType

logger = logging.getLogger(__name__)


class TraversalState(str, Enum):
    """States of the traversal state machine."""

    AT_BRANCH = "at_branch"
    AT_FAN_OUT = "at_fan_out"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal fallback taken during evaluation.

    Attributes:
        kind: Fallback kind (unknown_operator, missing_attribute, ...).
        node_id: Branch or output node being evaluated, if any.
        detail: Human readable description.
    """

    kind: str
    node_id: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "node_id": self.node_id, "detail": self.detail}


class NodeTrace:
    """Evaluation record for one node.

    Uses __slots__ for memory efficiency.

    Attributes:
        node_id: Evaluated node id.
        node_type: Node kind.
        decision: Quantifier decision (True for output candidates).
        block_results: Raw per-block results, before connector merges.
        merged_results: Results after connector merges, before the quantifier.
        committed: Whether the node lies on the committed path.
        pruned: Whether the node was evaluated as a fan-out candidate and dropped.
    """

    __slots__ = (
        "node_id",
        "node_type",
        "decision",
        "block_results",
        "merged_results",
        "committed",
        "pruned",
    )

    def __init__(
        self,
        node_id: str,
        node_type: NodeType,
        decision: bool = False,
        block_results: Optional[List[Any]] = None,
        merged_results: Optional[List[Any]] = None,
    ):
        self.node_id = node_id
        self.node_type = node_type
        self.decision = decision
        self.block_results = block_results or []
        self.merged_results = merged_results or []
        self.committed = False
        self.pruned = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert node trace to a JSON-safe dictionary."""
        return {
            "node_id": self.node_id,
            "node_type": self.node_type.value,
            "decision": self.decision,
            "block_results": [json_safe(r) for r in self.block_results],
            "merged_results": [json_safe(r) for r in self.merged_results],
            "committed": self.committed,
            "pruned": self.pruned,
        }

    def __repr__(self) -> str:
        return (
            f"NodeTrace(node_id={self.node_id!r}, decision={self.decision!r}, "
            f"committed={self.committed!r}, pruned={self.pruned!r})"
        )


def json_safe(value: Any) -> Any:
    """Map an evaluation value onto something ``json.dumps`` accepts.

    Fallbacks become ``False``; non-finite numbers become ``None``.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float, str)):
        return value
    return bool(value)


class EvaluationContext:
    """Per-call evaluation state.

    Uses __slots__ for memory efficiency and a zero-copy reference to the
    input record, which is only ever read.

    Attributes:
        _record: Reference to the input record.
        _now: Evaluation clock, naive local time.
        _start_time: Evaluation start timestamp.
        _current_node_id: Node currently being evaluated, for diagnostics.
        _traces: Node traces keyed by node id, in evaluation order.
        _path: Committed node ids, start first.
        _taken_edges: Edge ids on the committed path.
        _pruned_edges: Inbound edge ids of pruned fan-out candidates.
        _diagnostics: Fallbacks recorded during evaluation.
        _steps: Node evaluations performed so far.
    """

    __slots__ = (
        "_record",
        "_now",
        "_start_time",
        "_current_node_id",
        "_traces",
        "_path",
        "_taken_edges",
        "_pruned_edges",
        "_diagnostics",
        "_steps",
    )

    def __init__(self, record: Mapping[str, Any], now: Optional[datetime] = None):
        """Initialize evaluation context.

        Args:
            record: Input record mapping attribute names to values.
            now: Evaluation clock; defaults to the current local time.
                Timezone-aware values are converted to naive local time.
        """
        self._record = record if record is not None else {}
        if now is None:
            now = datetime.now()
        elif now.tzinfo is not None:
            now = now.astimezone().replace(tzinfo=None)
        self._now = now
        self._start_time = time.time()
        self._current_node_id: Optional[str] = None
        self._traces: Dict[str, NodeTrace] = {}
        self._path: List[str] = []
        self._taken_edges: List[str] = []
        self._pruned_edges: List[str] = []
        self._diagnostics: List[Diagnostic] = []
        self._steps = 0

    @property
    def record(self) -> Mapping[str, Any]:
        """Get reference to the input record."""
        return self._record

    @property
    def now(self) -> datetime:
        return self._now

    @property
    def elapsed_ms(self) -> float:
        """Get elapsed evaluation time in milliseconds."""
        return (time.time() - self._start_time) * 1000

    @property
    def current_node_id(self) -> Optional[str]:
        return self._current_node_id

    @current_node_id.setter
    def current_node_id(self, node_id: Optional[str]) -> None:
        self._current_node_id = node_id

    @property
    def steps(self) -> int:
        return self._steps

    def tick(self) -> int:
        """Count one node evaluation and return the running total."""
        self._steps += 1
        return self._steps

    def lookup(self, name: str) -> Any:
        """Get a record attribute, recording a diagnostic when it is absent.

        Returns:
            The attribute value, or None when missing.
        """
        value = self._record.get(name)
        if value is None:
            self.add_diagnostic("missing_attribute", f"Input record has no value for {name!r}")
        return value

    def add_diagnostic(self, kind: str, detail: str) -> None:
        """Record a non-fatal fallback against the current node."""
        diagnostic = Diagnostic(kind=kind, node_id=self._current_node_id, detail=detail)
        self._diagnostics.append(diagnostic)
        if kind == "missing_attribute":
            logger.debug(detail, extra={"node_id": self._current_node_id, "kind": kind})
        else:
            logger.warning(detail, extra={"node_id": self._current_node_id, "kind": kind})

    def record_trace(self, trace: NodeTrace) -> NodeTrace:
        self._traces[trace.node_id] = trace
        return trace

    def get_trace(self, node_id: str) -> Optional[NodeTrace]:
        return self._traces.get(node_id)

    def commit(self, node_id: str) -> None:
        """Add a node to the committed path."""
        self._path.append(node_id)
        trace = self._traces.get(node_id)
        if trace is not None:
            trace.committed = True
            trace.pruned = False

    def take_edge(self, edge_id: str) -> None:
        self._taken_edges.append(edge_id)

    def prune(self, node_id: str, edge_id: str) -> None:
        """Mark a fan-out candidate and its inbound edge as pruned."""
        trace = self._traces.get(node_id)
        if trace is not None and not trace.committed:
            trace.pruned = True
        self._pruned_edges.append(edge_id)

    @property
    def traces(self) -> List[NodeTrace]:
        return list(self._traces.values())

    @property
    def path(self) -> List[str]:
        return list(self._path)

    @property
    def taken_edges(self) -> List[str]:
        return list(self._taken_edges)

    @property
    def pruned_edges(self) -> List[str]:
        return [edge_id for edge_id in self._pruned_edges if edge_id not in self._taken_edges]

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)


@dataclass
class EvaluationResult:
    """Outcome of one evaluation.

    Attributes:
        annotated_graph: Annotated copy of the rule graph wire document.
        status: Terminal traversal state (ACCEPTED or REJECTED).
        output_node_id: Reached output node, if any.
        output_fields: Field values of the reached output node.
        reason: Rejection reason, if rejected.
        path: Committed node ids, start first.
        traces: Node traces in evaluation order.
        diagnostics: Fallbacks recorded during evaluation.
        execution_time_ms: Wall time of the evaluation.
    """

    annotated_graph: Dict[str, Any]
    status: TraversalState
    output_node_id: Optional[str] = None
    output_fields: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    path: List[str] = field(default_factory=list)
    traces: List[NodeTrace] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @property
    def decision_reached(self) -> bool:
        return self.status is TraversalState.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to the engine's external dictionary shape."""
        result: Dict[str, Any] = {
            "annotatedGraph": self.annotated_graph,
            "decisionReached": self.decision_reached,
            "outputNodeId": self.output_node_id,
            "status": self.status.value,
            "path": list(self.path),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
        if self.decision_reached:
            result["outputFields"] = dict(self.output_fields)
        if self.reason is not None:
            result["reason"] = self.reason
        return result
