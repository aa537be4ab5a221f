"""Workflow graph parsing, node lookup and input patching.

A ComfyUI API-format workflow is a JSON object keyed by node id:

    {"3": {"class_type": "KSampler", "inputs": {"seed": 1, "model": ["4", 0]}, "_meta": {"title": "KSampler"}}}

Each invocation parses its own copy, patches it in place and serializes it
for submission. Nothing here talks to the network.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import (
    InsufficientMatches,
    InvalidNodeShape,
    InvalidWorkflowJson,
    KindNotFound,
    NodeNotFound,
    WorkflowNotAnObject,
)
from .logging import get_logger


@dataclass(frozen=True)
class NodeLink:
    """An edge reference `[source_node_id, output_slot]` inside a node's inputs."""

    node_id: str
    slot: int

    def to_json(self) -> List[Any]:
        return [self.node_id, self.slot]


InputValue = Union[str, int, float, bool, None, NodeLink]

_SCALARS = (str, int, float, bool, type(None))


def _decode_value(value: Any) -> Any:
    if (
        isinstance(value, list)
        and len(value) == 2
        and isinstance(value[0], str)
        and isinstance(value[1], int)
        and not isinstance(value[1], bool)
    ):
        return NodeLink(value[0], value[1])
    return value


def _encode_value(value: Any) -> Any:
    if isinstance(value, NodeLink):
        return value.to_json()
    return value


def _check_value(value: Any) -> InputValue:
    if isinstance(value, NodeLink) or isinstance(value, _SCALARS):
        return value
    raise TypeError(f"unsupported node input value type: {type(value).__name__}")


@dataclass
class GraphNode:
    node_id: str
    kind: str
    inputs: Optional[Dict[str, Any]]
    meta: Optional[Dict[str, Any]] = None
    # Any other keys present on the node object, kept for serialization.
    extra: Dict[str, Any] = field(default_factory=dict)
    kind_declared: bool = True

    @property
    def title(self) -> Optional[str]:
        if isinstance(self.meta, dict):
            t = self.meta.get("title")
            return str(t) if t is not None else None
        return None

    def has_field(self, name: str) -> bool:
        return isinstance(self.inputs, dict) and name in self.inputs

    def get_input(self, name: str, default: Any = None) -> Any:
        if not isinstance(self.inputs, dict):
            return default
        return self.inputs.get(name, default)

    def require_inputs(self) -> Dict[str, Any]:
        if not isinstance(self.inputs, dict):
            raise InvalidNodeShape(
                f'Node "{self.node_id}" ({self.kind}) has no inputs object and cannot be patched.'
            )
        return self.inputs

    @classmethod
    def from_json(cls, node_id: str, obj: Mapping[str, Any]) -> "GraphNode":
        raw_inputs = obj.get("inputs")
        kind = obj.get("class_type")
        meta = obj.get("_meta")

        consumed = set()
        inputs: Optional[Dict[str, Any]] = None
        if isinstance(raw_inputs, dict):
            inputs = {str(k): _decode_value(v) for k, v in raw_inputs.items()}
            consumed.add("inputs")
        if isinstance(kind, str):
            consumed.add("class_type")
        if isinstance(meta, dict):
            consumed.add("_meta")

        return cls(
            node_id=node_id,
            kind=kind if isinstance(kind, str) else "",
            inputs=inputs,
            meta=meta if isinstance(meta, dict) else None,
            extra={k: v for k, v in obj.items() if k not in consumed},
            kind_declared=isinstance(kind, str),
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.inputs is not None:
            out["inputs"] = {k: _encode_value(v) for k, v in self.inputs.items()}
        if self.kind_declared:
            out["class_type"] = self.kind
        if self.meta is not None:
            out["_meta"] = self.meta
        out.update(self.extra)
        return out


class WorkflowGraph:
    """Ordered mapping of node id -> GraphNode.

    Top-level entries that are not node objects are carried through untouched
    so serialization does not drop anything the caller supplied.
    """

    def __init__(self, entries: Mapping[str, Any]):
        self._entries: Dict[str, Any] = {}
        for key, value in entries.items():
            node_id = str(key)
            if isinstance(value, dict):
                self._entries[node_id] = GraphNode.from_json(node_id, value)
            else:
                self._entries[node_id] = value

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, node_id: object) -> bool:
        return isinstance(self._entries.get(node_id), GraphNode)  # type: ignore[arg-type]

    def get(self, node_id: str) -> Optional[GraphNode]:
        node = self._entries.get(node_id)
        return node if isinstance(node, GraphNode) else None

    def nodes(self) -> Iterator[GraphNode]:
        for value in self._entries.values():
            if isinstance(value, GraphNode):
                yield value

    def nodes_of_kind(self, kinds: Union[str, Iterable[str]]) -> List[GraphNode]:
        wanted = {kinds} if isinstance(kinds, str) else set(kinds)
        return [n for n in self.nodes() if n.kind in wanted]

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: value.to_json() if isinstance(value, GraphNode) else value
            for key, value in self._entries.items()
        }

    def to_json(self, *, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


def parse_workflow(text: str) -> WorkflowGraph:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise InvalidWorkflowJson(
            "Invalid workflow JSON. Please check the JSON syntax and try again.",
            description=str(e),
        ) from e

    if not isinstance(data, dict):
        raise WorkflowNotAnObject(
            "Invalid workflow structure. The workflow must be a valid JSON object.",
            description=f"top-level value is {type(data).__name__}",
        )
    return WorkflowGraph(data)


def locate_by_id(graph: WorkflowGraph, node_id: str, expected_kind: str) -> GraphNode:
    node = graph.get(node_id)
    if node is None or node.kind != expected_kind:
        found = f" (found {node.kind})" if node is not None else ""
        raise NodeNotFound(
            f'No {expected_kind} node found with ID "{node_id}"{found}. Please check your workflow.'
        )
    return node


def locate_by_kind(graph: WorkflowGraph, kind: str, *, require_field: Optional[str] = None) -> GraphNode:
    for node in graph.nodes():
        if node.kind == kind and (require_field is None or node.has_field(require_field)):
            return node
    raise KindNotFound(
        f"No {kind} node found in the workflow. The workflow must contain a {kind} node."
    )


def locate_pair_by_kind(
    graph: WorkflowGraph, kind: str, *, require_field: Optional[str] = None
) -> Tuple[GraphNode, GraphNode]:
    matches = [
        n
        for n in graph.nodes()
        if n.kind == kind and (require_field is None or n.has_field(require_field))
    ]
    if len(matches) < 2:
        raise InsufficientMatches(
            f"Found {len(matches)} {kind} node(s) in the workflow. "
            f"The workflow must contain at least 2 {kind} nodes for dual input processing."
        )
    return matches[0], matches[1]


def set_field(node: GraphNode, name: str, value: Any) -> None:
    """Write `inputs[name]` whether or not the field exists yet."""
    node.require_inputs()[name] = _check_value(value)


def patch_field(node: GraphNode, name: str, value: Any) -> bool:
    """Overwrite `inputs[name]` only if the node already declares it."""
    inputs = node.require_inputs()
    if name not in inputs:
        return False
    inputs[name] = _check_value(value)
    return True


def sweep_fields(
    graph: WorkflowGraph,
    kinds: Iterable[str],
    values: Mapping[str, Any],
    *,
    first_only: bool = False,
) -> List[str]:
    """Best-effort alias sweep over every node of the recognized kinds.

    `values` maps input field names (aliases included) to the value to write;
    only fields already present on a node are touched. Nodes without an
    inputs object are skipped. Returns the ids of nodes that changed.
    """
    log = get_logger()
    touched: List[str] = []
    for node in graph.nodes_of_kind(kinds):
        if not isinstance(node.inputs, dict):
            continue
        written = [name for name, value in values.items() if patch_field(node, name, value)]
        if written:
            touched.append(node.node_id)
            log.debug(f"[graph] {node.kind} ({node.node_id}) updated: {', '.join(written)}")
        if first_only:
            break
    return touched
