"""Rule graph model for the decision engine.

A rule graph is the persisted React Flow document of a business rule: one
start node, branch nodes carrying condition blocks, output nodes carrying
field assignments, and directed edges labelled through ``sourceHandle``.

This module parses the wire format into typed, read-only views while keeping
the original document intact, so that annotated copies preserve every key the
authoring UI stores (positions, sizes, selection flags).
"""

import copy
import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

YES = "yes"
NO = "no"


class MalformedGraphError(ValueError):
    """Raised when a rule graph violates its structural invariants."""


class NodeType(str, Enum):
    """Node kinds, named as the authoring UI names them."""

    START = "attributeNode"
    BRANCH = "conditionalNode"
    OUTPUT = "outputNode"


class Quantifier(str, Enum):
    """Node-level combinator over a branch's block results."""

    ALL = "All"
    ANY = "Any"

    @classmethod
    def parse(cls, value: Any) -> "Quantifier":
        """Parse a stored ``rule`` value. Missing values default to ALL."""
        if value is None:
            return cls.ALL
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise MalformedGraphError(f"Invalid branch rule: {value!r}. Must be 'All' or 'Any'")


class Connector(str, Enum):
    """Block-level boolean connector, attached to the earlier block."""

    AND = "&&"
    OR = "||"

    @classmethod
    def parse(cls, value: Any) -> Union["Connector", str, None]:
        """Parse a stored ``boolean`` value.

        Empty and false values mean no connector. Unrecognised connectors are
        returned as the raw string so evaluation can fall back instead of
        rejecting a stored rule.
        """
        if not value:
            return None
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        aliases = {"&&": cls.AND, "AND": cls.AND, "||": cls.OR, "OR": cls.OR}
        return aliases.get(text.upper(), text)


@dataclass(frozen=True)
class AttributeRef:
    """Left operand naming an input record attribute."""

    name: str


@dataclass(frozen=True)
class SpecialFunction:
    """Left operand calling a temporal function, e.g. ``date_diff,a,b,years``.

    Attributes:
        name: Function name (``date_diff`` or ``time_diff``).
        args: The two attribute tokens whose delta is measured.
        unit: Optional unit; the resolver applies a default when absent.
    """

    name: str
    args: Tuple[str, ...] = ()
    unit: Optional[str] = None

    @classmethod
    def parse(cls, descriptor: str) -> "SpecialFunction":
        """Parse a comma separated descriptor."""
        parts = [part.strip() for part in descriptor.split(",")]
        unit = parts[3] if len(parts) > 3 and parts[3] else None
        return cls(name=parts[0], args=tuple(parts[1:3]), unit=unit)

    def to_descriptor(self) -> str:
        parts = [self.name, *self.args]
        if self.unit:
            parts.append(self.unit)
        return ",".join(parts)


class PreviousResult:
    """Left operand meaning "the running result of the previous expression"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PREVIOUS"


PREVIOUS = PreviousResult()

Operand = Union[AttributeRef, SpecialFunction, PreviousResult]


def parse_operand(raw: Any) -> Operand:
    """Turn a stored ``inputAttribute`` into an operand variant."""
    if raw is None:
        return PREVIOUS
    text = str(raw).strip()
    if "," in text:
        return SpecialFunction.parse(text)
    return AttributeRef(text)


def operand_to_wire(operand: Operand) -> Optional[str]:
    if isinstance(operand, AttributeRef):
        return operand.name
    if isinstance(operand, SpecialFunction):
        return operand.to_descriptor()
    return None


@dataclass(frozen=True)
class Expression:
    """One binary expression inside a condition block.

    Attributes:
        left: Attribute, special function, or PREVIOUS.
        operator: Operator symbol as stored; unknown symbols are kept.
        right: Numeric literal or attribute name, as stored.
    """

    left: Operand
    operator: str
    right: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert expression to its wire dictionary."""
        return {
            "inputAttribute": operand_to_wire(self.left),
            "operator": self.operator,
            "value": self.right,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expression":
        """Create expression from its wire dictionary."""
        return cls(
            left=parse_operand(data.get("inputAttribute")),
            operator=str(data.get("operator") or "").strip(),
            right=data.get("value"),
        )


@dataclass(frozen=True)
class ConditionBlock:
    """Ordered expressions folded into one result.

    Attributes:
        expressions: Expressions evaluated left to right.
        connector: Connector merging this block with the next one, if any.
        multiple: Authoring flag carried through unchanged.
    """

    expressions: Tuple[Expression, ...]
    connector: Union[Connector, str, None] = None
    multiple: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "multiple": self.multiple,
            "expression": [e.to_dict() for e in self.expressions],
        }
        if self.connector is not None:
            result["boolean"] = (
                self.connector.value if isinstance(self.connector, Connector) else self.connector
            )
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionBlock":
        return cls(
            expressions=tuple(Expression.from_dict(e) for e in data.get("expression") or []),
            connector=Connector.parse(data.get("boolean")),
            multiple=bool(data.get("multiple", False)),
        )


@dataclass(frozen=True)
class OutputField:
    """A ``{field, value}`` assignment of an output node."""

    field: str
    value: Any = None


@dataclass(frozen=True)
class Node:
    """Typed view of one graph node.

    Attributes:
        id: Node identifier, unique within the graph.
        type: Start, branch or output.
        label: Display label.
        quantifier: Branch quantifier (branch nodes only).
        conditions: Condition blocks (branch nodes only).
        output_fields: Assignments (output nodes only).
        output_attributes: Declared output attribute names.
        input_attributes: Declared input attribute names.
    """

    id: str
    type: NodeType
    label: str = ""
    quantifier: Optional[Quantifier] = None
    conditions: Tuple[ConditionBlock, ...] = ()
    output_fields: Tuple[OutputField, ...] = ()
    output_attributes: Tuple[str, ...] = ()
    input_attributes: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Create node view from its wire dictionary.

        Raises:
            MalformedGraphError: If id or type is missing or unknown.
        """
        if data.get("id") is None:
            raise MalformedGraphError("Node without id")
        node_id = str(data["id"])
        try:
            node_type = NodeType(data.get("type"))
        except ValueError:
            raise MalformedGraphError(f"Node {node_id} has unknown type: {data.get('type')!r}")

        payload = data.get("data") or {}
        quantifier = None
        conditions: Tuple[ConditionBlock, ...] = ()
        output_fields: Tuple[OutputField, ...] = ()

        if node_type is NodeType.BRANCH:
            quantifier = Quantifier.parse(payload.get("rule"))
            conditions = tuple(ConditionBlock.from_dict(c) for c in payload.get("conditions") or [])
        elif node_type is NodeType.OUTPUT:
            output_fields = tuple(
                OutputField(field=str(f.get("field") or ""), value=f.get("value"))
                for f in payload.get("outputFields") or []
            )

        return cls(
            id=node_id,
            type=node_type,
            label=str(payload.get("label") or ""),
            quantifier=quantifier,
            conditions=conditions,
            output_fields=output_fields,
            output_attributes=tuple(payload.get("outputAttributes") or ()),
            input_attributes=tuple(payload.get("inputAttributes") or ()),
        )


@dataclass(frozen=True)
class Edge:
    """Typed view of one directed edge. ``label`` is the ``sourceHandle``."""

    id: str
    source: str
    target: str
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        if data.get("source") is None or data.get("target") is None:
            raise MalformedGraphError(f"Edge {data.get('id')!r} needs source and target")
        source = str(data["source"])
        target = str(data["target"])
        handle = data.get("sourceHandle")
        return cls(
            id=str(data.get("id") or f"{source}-{handle or 'start'}-{target}"),
            source=source,
            target=target,
            label=str(handle).strip().lower() if handle else None,
        )


class RuleGraph:
    """Immutable rule graph value.

    The wire document is deep-copied on construction and on every
    ``to_dict()`` call, so neither the caller's dictionary nor the graph's
    own copy is ever shared with an evaluation.

    Attributes:
        nodes: Node views keyed by id, in document order.
        edges: Edge views in document order.
    """

    __slots__ = ("_wire", "nodes", "edges", "_outgoing", "_incoming")

    def __init__(self, data: Dict[str, Any]):
        """Parse a wire document.

        Args:
            data: Dictionary with ``nodes`` and ``edges`` lists.

        Raises:
            MalformedGraphError: If nodes or edges cannot be parsed or ids repeat.
        """
        if not isinstance(data, dict):
            raise MalformedGraphError(f"Rule graph must be a mapping, got {type(data).__name__}")
        self._wire = copy.deepcopy(data)

        self.nodes: Dict[str, Node] = {}
        for raw in self._wire.get("nodes") or []:
            node = Node.from_dict(raw)
            if node.id in self.nodes:
                raise MalformedGraphError(f"Duplicate node id: {node.id}")
            self.nodes[node.id] = node

        edges = [Edge.from_dict(raw) for raw in self._wire.get("edges") or []]
        seen = set()
        for edge in edges:
            if edge.id in seen:
                raise MalformedGraphError(f"Duplicate edge id: {edge.id}")
            seen.add(edge.id)
        self.edges: Tuple[Edge, ...] = tuple(edges)

        self._outgoing: Dict[str, List[Edge]] = defaultdict(list)
        self._incoming: Dict[str, List[Edge]] = defaultdict(list)
        for edge in self.edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleGraph":
        """Create rule graph from its wire dictionary."""
        return cls(data)

    @classmethod
    def from_json(cls, text: str) -> "RuleGraph":
        """Create rule graph from a JSON string, as stored in a rule's ``condition``."""
        return cls(json.loads(text))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RuleGraph":
        """Load rule graph from JSON or YAML file.

        Args:
            path: Path to graph file (.json or .yaml/.yml).

        Returns:
            Loaded rule graph.

        Raises:
            ValueError: If file format is unsupported.
        """
        path = Path(path)
        suffix = path.suffix.lower()

        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".json":
                data = json.load(f)
            elif suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}. Use .json, .yaml, or .yml")

        return cls(data)

    def to_dict(self) -> Dict[str, Any]:
        """Return a fresh deep copy of the wire document."""
        return copy.deepcopy(self._wire)

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self._wire, indent=indent)

    def node(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            MalformedGraphError: If no such node exists.
        """
        try:
            return self.nodes[node_id]
        except KeyError:
            raise MalformedGraphError(f"Unknown node: {node_id}")

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, ()))

    def incoming(self, node_id: str) -> List[Edge]:
        return list(self._incoming.get(node_id, ()))

    def successors(self, node_id: str, label: str) -> List[Edge]:
        """Get outgoing edges of ``node_id`` carrying ``label``, in document order."""
        return [edge for edge in self._outgoing.get(node_id, ()) if edge.label == label]

    @property
    def start_node(self) -> Node:
        """Get the single start node.

        Raises:
            MalformedGraphError: If there is no start node or more than one.
        """
        starts = [n for n in self.nodes.values() if n.type is NodeType.START]
        if not starts:
            raise MalformedGraphError("Rule graph has no start node")
        if len(starts) > 1:
            raise MalformedGraphError(
                f"Rule graph has {len(starts)} start nodes: {[n.id for n in starts]}"
            )
        return starts[0]

    def topological_order(self) -> List[str]:
        """Order node ids so every edge points forward.

        Raises:
            MalformedGraphError: If the graph contains a cycle.
        """
        in_degree = {node_id: 0 for node_id in self.nodes}
        for edge in self.edges:
            if edge.target in in_degree:
                in_degree[edge.target] += 1

        # Kahn's algorithm
        queue = deque([node_id for node_id, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            node_id = queue.popleft()
            order.append(node_id)

            for edge in self._outgoing.get(node_id, ()):
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)

        if len(order) != len(self.nodes):
            cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            raise MalformedGraphError(f"Cycle detected in rule graph through nodes: {cyclic}")

        return order

    def validate(self) -> "RuleGraph":
        """Check structural invariants.

        Returns:
            The graph itself, for chaining.

        Raises:
            MalformedGraphError: On dangling edges, a missing or ambiguous
                start node, cycles, output nodes with outgoing edges, or
                branch nodes without a "yes" edge.
        """
        for edge in self.edges:
            if edge.source not in self.nodes:
                raise MalformedGraphError(f"Edge {edge.id} has unknown source: {edge.source}")
            if edge.target not in self.nodes:
                raise MalformedGraphError(f"Edge {edge.id} has unknown target: {edge.target}")

        start = self.start_node
        start_edges = self.outgoing(start.id)
        if len(start_edges) != 1:
            raise MalformedGraphError(
                f"Start node {start.id} must have exactly one outgoing edge, has {len(start_edges)}"
            )
        if start_edges[0].label == NO:
            raise MalformedGraphError(f"Start node {start.id} edge cannot be labelled 'no'")
        if self.incoming(start.id):
            raise MalformedGraphError(f"Start node {start.id} has inbound edges")

        for node in self.nodes.values():
            if node.type is NodeType.OUTPUT and self.outgoing(node.id):
                raise MalformedGraphError(f"Output node {node.id} has outgoing edges")
            if node.type is NodeType.BRANCH and not self.successors(node.id, YES):
                raise MalformedGraphError(f"Branch node {node.id} has no 'yes' edge")

        self.topological_order()

        unreachable = set(self.nodes) - self._reachable_from(start.id)
        if unreachable:
            logger.warning(
                "Rule graph has unreachable nodes",
                extra={"node_ids": sorted(unreachable)},
            )

        return self

    def _reachable_from(self, node_id: str) -> set:
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self._outgoing.get(current, ()):
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen

    def __repr__(self) -> str:
        nodes = getattr(self, "nodes", {})
        edges = getattr(self, "edges", ())
        return f"RuleGraph(nodes={len(nodes)}, edges={len(edges)})"
