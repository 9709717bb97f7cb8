"""Trace annotation for evaluated rule graphs.

The annotated graph is the wire document with evaluation metadata written
into the keys the authoring UI renders: ``data.computed``, ``data.result`` and
``data.color`` on nodes; ``animated``, ``style.stroke`` and
``markerEnd.color`` on edges.
"""

import logging
from typing import Any, Dict, Optional

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import EvaluationContext, json_safe
from decisionhub.core.graph import NodeType, RuleGraph

logger = logging.getLogger(__name__)

NODE_TRACE_KEYS = ("computed", "result", "color")


class TraceAnnotator:
    """Builds annotated copies of rule graphs from an evaluation context.

    Attributes:
        accept_color: Colour of taken nodes and edges.
        reject_color: Colour of pruned nodes and edges, and of false decisions.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        config = config or EngineConfig()
        self.accept_color = config.accept_color
        self.reject_color = config.reject_color

    def annotate(self, graph: RuleGraph, context: EvaluationContext) -> Dict[str, Any]:
        """Produce an annotated copy of ``graph``.

        Annotations left over from earlier evaluations are cleared first, so
        the copy only describes this evaluation.

        Args:
            graph: Evaluated rule graph.
            context: Context of the finished traversal.

        Returns:
            New wire document; ``graph`` itself is not modified.
        """
        wire = graph.to_dict()
        nodes = {str(raw.get("id")): raw for raw in wire.get("nodes") or []}
        edges = {}
        for raw, edge in zip(wire.get("edges") or [], graph.edges):
            edges[edge.id] = raw

        for raw in nodes.values():
            data = raw.get("data")
            if isinstance(data, dict):
                for key in NODE_TRACE_KEYS:
                    data.pop(key, None)
        for raw in edges.values():
            self._clear_edge(raw)

        path = context.path
        if path:
            start = self._node_data(nodes[path[0]])
            start["computed"] = True
            start["color"] = self.accept_color

        for trace in context.traces:
            data = self._node_data(nodes[trace.node_id])
            if trace.node_type is NodeType.BRANCH:
                data["computed"] = bool(trace.decision)
                data["result"] = [json_safe(r) for r in trace.block_results]
            else:
                data["computed"] = True
            accepted = trace.committed and trace.decision
            data["color"] = self.accept_color if accepted else self.reject_color

        for edge_id in context.taken_edges:
            self._paint_edge(edges[edge_id], self.accept_color, animated=True)

        for edge_id in context.pruned_edges:
            self._paint_edge(edges[edge_id], self.reject_color, animated=False)

        logger.debug(
            "Annotated rule graph",
            extra={
                "taken_edges": context.taken_edges,
                "pruned_edges": context.pruned_edges,
            },
        )

        return wire

    @staticmethod
    def _node_data(raw: Dict[str, Any]) -> Dict[str, Any]:
        data = raw.get("data")
        if not isinstance(data, dict):
            data = {}
            raw["data"] = data
        return data

    @staticmethod
    def _clear_edge(raw: Dict[str, Any]) -> None:
        if raw.get("animated"):
            raw["animated"] = False
        style = raw.get("style")
        if isinstance(style, dict):
            style.pop("stroke", None)
        marker = raw.get("markerEnd")
        if isinstance(marker, dict):
            marker.pop("color", None)

    @staticmethod
    def _paint_edge(raw: Dict[str, Any], color: str, animated: bool) -> None:
        raw["animated"] = animated

        style = raw.get("style")
        if not isinstance(style, dict):
            style = {}
            raw["style"] = style
        style["stroke"] = color

        marker = raw.get("markerEnd")
        if isinstance(marker, dict):
            marker["color"] = color
        elif marker:
            raw["markerEnd"] = {"type": marker, "color": color}
        else:
            raw["markerEnd"] = {"color": color}
