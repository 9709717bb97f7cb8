"""Decision engine.

This module walks a rule graph from its start node to at most one output
node, evaluating branch nodes along the way, and returns the chosen output
together with an annotated copy of the graph.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import EvaluationContext, EvaluationResult, NodeTrace, TraversalState
from decisionhub.core.graph import (
    NO,
    YES,
    Edge,
    MalformedGraphError,
    Node,
    NodeType,
    RuleGraph,
    SpecialFunction,
    parse_operand,
)
from decisionhub.core.trace import TraceAnnotator
from decisionhub.evaluation.evaluator import ExpressionEvaluator

logger = logging.getLogger(__name__)

NO_MATCH = "no-match"

GraphInput = Union[RuleGraph, Dict[str, Any]]


class DecisionEngine:
    """Traversal engine for rule graphs.

    Evaluation is synchronous and keeps no state between calls apart from
    statistics, so one engine can serve concurrent evaluations.

    Uses __slots__ for memory efficiency.

    Attributes:
        config: Engine configuration.
        evaluator: Expression evaluator used at branch nodes.
        annotator: Trace annotator producing annotated graphs.
        _statistics: Evaluation statistics.
        _lock: Guards statistics updates from worker threads.
    """

    __slots__ = (
        "config",
        "evaluator",
        "annotator",
        "_statistics",
        "_lock",
    )

    def __init__(self, config: Optional[EngineConfig] = None):
        """Initialize decision engine.

        Args:
            config: Engine configuration; defaults are used when omitted.
        """
        self.config = config or EngineConfig()
        self.evaluator = ExpressionEvaluator(self.config)
        self.annotator = TraceAnnotator(self.config)
        self._statistics = {
            "evaluations": 0,
            "accepted": 0,
            "rejected": 0,
            "diagnostics": 0,
            "total_time_ms": 0.0,
        }
        self._lock = threading.Lock()

        logger.info(
            "Initialized DecisionEngine",
            extra={"max_steps": self.config.max_steps},
        )

    def evaluate(
        self,
        graph: GraphInput,
        record: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """Evaluate a rule graph against an input record.

        Args:
            graph: Rule graph value or its wire dictionary.
            record: Input record mapping attribute names to values.
            now: Evaluation clock for current_date/current_time.

        Returns:
            Evaluation result with the annotated graph.

        Raises:
            MalformedGraphError: If the graph violates its invariants.
        """
        rule_graph = graph if isinstance(graph, RuleGraph) else RuleGraph.from_dict(graph)
        rule_graph.validate()

        context = EvaluationContext(record, now=now)
        status, output_node, reason = self._traverse(rule_graph, context)

        output_fields: Dict[str, Any] = {}
        if output_node is not None:
            output_fields = self._resolve_outputs(output_node, context)

        result = EvaluationResult(
            annotated_graph=self.annotator.annotate(rule_graph, context),
            status=status,
            output_node_id=output_node.id if output_node is not None else None,
            output_fields=output_fields,
            reason=reason,
            path=context.path,
            traces=context.traces,
            diagnostics=context.diagnostics,
            execution_time_ms=context.elapsed_ms,
        )

        with self._lock:
            self._statistics["evaluations"] += 1
            self._statistics["accepted" if result.decision_reached else "rejected"] += 1
            self._statistics["diagnostics"] += len(result.diagnostics)
            self._statistics["total_time_ms"] += result.execution_time_ms

        logger.info(
            "Evaluation complete",
            extra={
                "status": status.value,
                "output_node_id": result.output_node_id,
                "path": result.path,
                "execution_time_ms": round(result.execution_time_ms, 3),
            },
        )

        return result

    def _traverse(
        self, graph: RuleGraph, context: EvaluationContext
    ) -> Tuple[TraversalState, Optional[Node], Optional[str]]:
        """Run the traversal state machine.

        Returns:
            Terminal state, reached output node (or None), rejection reason.
        """
        start = graph.start_node
        context.commit(start.id)
        entry = graph.outgoing(start.id)[0]
        context.take_edge(entry.id)

        visited = {start.id}
        node = graph.node(entry.target)

        while True:
            if node.id in visited:
                raise MalformedGraphError(f"Cycle detected at node {node.id}")
            visited.add(node.id)

            if node.type is NodeType.OUTPUT:
                if context.get_trace(node.id) is None:
                    context.record_trace(NodeTrace(node.id, NodeType.OUTPUT, decision=True))
                context.commit(node.id)
                return TraversalState.ACCEPTED, node, None

            # AtBranch: reuse the decision of a committed fan-out candidate
            trace = context.get_trace(node.id)
            if trace is None:
                trace = self._evaluate_branch(node, context)
            context.commit(node.id)

            label = YES if trace.decision else NO
            edges = graph.successors(node.id, label)
            targets = list(dict.fromkeys(edge.target for edge in edges))
            logger.debug(
                "Branch decided",
                extra={"node_id": node.id, "decision": trace.decision, "targets": targets},
            )

            if not targets:
                return TraversalState.REJECTED, None, NO_MATCH

            if len(targets) == 1:
                for edge in edges:
                    context.take_edge(edge.id)
                node = graph.node(targets[0])
                continue

            # AtFanOut
            committed = self._resolve_fan_out(graph, edges, context)
            if committed is None:
                return TraversalState.REJECTED, None, NO_MATCH
            node = graph.node(committed)

    def _resolve_fan_out(self, graph: RuleGraph, edges: List[Edge], context: EvaluationContext) -> Optional[str]:
        """Evaluate every fan-out candidate and commit the last one deciding true.

        Candidates are evaluated in edge order without stopping early. Output
        candidates carry no conditions and decide true.

        Returns:
            Committed node id, or None when no candidate decides true.
        """
        committed: Optional[str] = None
        for edge in edges:
            candidate = graph.node(edge.target)
            trace = context.get_trace(candidate.id)
            if trace is None:
                if candidate.type is NodeType.OUTPUT:
                    trace = context.record_trace(NodeTrace(candidate.id, NodeType.OUTPUT, decision=True))
                else:
                    trace = self._evaluate_branch(candidate, context)
            if trace.decision:
                committed = candidate.id

        for edge in edges:
            if edge.target == committed:
                context.take_edge(edge.id)
            else:
                context.prune(edge.target, edge.id)

        logger.debug(
            "Fan-out resolved",
            extra={"candidates": [edge.target for edge in edges], "committed": committed},
        )
        return committed

    def _evaluate_branch(self, node: Node, context: EvaluationContext) -> NodeTrace:
        if context.tick() > self.config.max_steps:
            raise MalformedGraphError(f"Evaluation exceeded {self.config.max_steps} steps")

        context.current_node_id = node.id
        try:
            aggregation = self.evaluator.aggregate(node.quantifier, node.conditions, context)
        finally:
            context.current_node_id = None

        return context.record_trace(
            NodeTrace(
                node.id,
                NodeType.BRANCH,
                decision=aggregation.decision,
                block_results=aggregation.block_results,
                merged_results=aggregation.merged_results,
            )
        )

    def _resolve_outputs(self, node: Node, context: EvaluationContext) -> Dict[str, Any]:
        """Resolve an output node's assignments.

        A value naming a record attribute takes the record value; a special
        function descriptor takes its magnitude; anything else is a literal.
        An empty field name takes the output attribute at the same position.
        """
        context.current_node_id = node.id
        fields: Dict[str, Any] = {}
        try:
            for index, assignment in enumerate(node.output_fields):
                name = assignment.field
                if not name and index < len(node.output_attributes):
                    name = node.output_attributes[index]
                fields[name] = self._resolve_output_value(assignment.value, context)
        finally:
            context.current_node_id = None
        return fields

    def _resolve_output_value(self, value: Any, context: EvaluationContext) -> Any:
        if not isinstance(value, str):
            return value
        if context.record.get(value) is not None:
            return context.record[value]
        operand = parse_operand(value)
        if isinstance(operand, SpecialFunction):
            return self.evaluator.temporal.resolve(operand, context)
        return value

    async def evaluate_batch(
        self,
        graph: GraphInput,
        records: Iterable[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[EvaluationResult]:
        """Evaluate many records against one graph concurrently.

        Evaluations run in worker threads, at most
        ``config.max_parallel_evaluations`` at a time.

        Args:
            graph: Rule graph value or its wire dictionary.
            records: Input records.
            now: Shared evaluation clock.

        Returns:
            Results in input order.

        Raises:
            MalformedGraphError: If the graph violates its invariants.
            TimeoutError: If the batch exceeds ``config.batch_timeout_ms``.
        """
        rule_graph = graph if isinstance(graph, RuleGraph) else RuleGraph.from_dict(graph)
        rule_graph.validate()
        records = list(records)
        semaphore = asyncio.Semaphore(self.config.max_parallel_evaluations)

        async def run_one(record: Mapping[str, Any]) -> EvaluationResult:
            async with semaphore:
                return await asyncio.to_thread(self.evaluate, rule_graph, record, now)

        logger.info("Starting batch evaluation", extra={"records": len(records)})

        try:
            async with asyncio.timeout(self.config.batch_timeout_ms / 1000):
                results = await asyncio.gather(*(run_one(record) for record in records))
        except asyncio.TimeoutError:
            logger.error(f"Batch timeout exceeded: {self.config.batch_timeout_ms}ms")
            raise TimeoutError(f"Batch evaluation exceeded {self.config.batch_timeout_ms}ms")

        return list(results)

    def get_statistics(self) -> Dict[str, Any]:
        """Get evaluation statistics."""
        with self._lock:
            return dict(self._statistics)

    def reset_statistics(self) -> None:
        with self._lock:
            for key in self._statistics:
                self._statistics[key] = 0.0 if key == "total_time_ms" else 0


def evaluate(
    rule_graph: GraphInput,
    input_record: Mapping[str, Any],
    config: Optional[EngineConfig] = None,
    now: Optional[datetime] = None,
) -> EvaluationResult:
    """Evaluate a rule graph with a throwaway engine.

    Args:
        rule_graph: Rule graph value or its wire dictionary.
        input_record: Input record.
        config: Optional engine configuration.
        now: Optional evaluation clock.

    Returns:
        Evaluation result.
    """
    return DecisionEngine(config).evaluate(rule_graph, input_record, now=now)
