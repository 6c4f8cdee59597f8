"""Resource graph loading and validation.

A resource graph is the desired (or last-applied) infrastructure of one
stage: named resource nodes with typed attributes and dependency edges.

Dependencies are either local ('vpc') or reference a node of an earlier
stage ('setup:registry'). References to the same or a later stage through
the qualified form are rejected; local references must resolve.
"""

import heapq
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import STAGE_ORDER, ConfigError

logger = logging.getLogger(__name__)

STAGE_SEPARATOR = ':'


class GraphError(ConfigError):
    """Resource graph structure error (duplicates, dangling refs, cycles)."""


def split_ref(ref: str) -> tuple[Optional[str], str]:
    """Split a dependency reference into (stage, name).

    Returns (None, name) for local references.
    """
    if STAGE_SEPARATOR in ref:
        stage, name = ref.split(STAGE_SEPARATOR, 1)
        return stage, name
    return None, ref


@dataclass
class ResourceNode:
    """A single resource in a stage's graph.

    Attributes:
        name: Resource identifier, unique within the stage
        type: Resource type (network, registry, cluster, database, policy, ...)
        attributes: Typed attribute values compared by the planner
        depends_on: Local names or 'stage:name' references to earlier stages
        replace_on: Attribute names whose change forces destroy-and-recreate
    """
    name: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    replace_on: list[str] = field(default_factory=list)

    @property
    def local_deps(self) -> list[str]:
        return [ref for ref in self.depends_on if split_ref(ref)[0] is None]

    @property
    def external_deps(self) -> list[tuple[str, str]]:
        deps = []
        for ref in self.depends_on:
            stage, name = split_ref(ref)
            if stage is not None:
                deps.append((stage, name))
        return deps

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceNode':
        """Create ResourceNode from dictionary."""
        return cls(
            name=data['name'],
            type=data['type'],
            attributes=dict(data.get('attributes') or {}),
            depends_on=list(data.get('depends_on') or []),
            replace_on=list(data.get('replace_on') or []),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.depends_on:
            d['depends_on'] = self.depends_on
        if self.replace_on:
            d['replace_on'] = self.replace_on
        return d


@dataclass
class ResourceGraph:
    """Resource graph of one stage.

    Attributes:
        stage: Stage the graph belongs to
        nodes: Resource nodes in declaration order
        version: State version this graph was read at (0 = never applied)
        outputs: Stage outputs recorded at last apply (observed graphs only)
    """
    stage: str
    nodes: list[ResourceNode] = field(default_factory=list)
    version: int = 0
    outputs: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        validate_graph(self.stage, self.nodes)

    @property
    def names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def get(self, name: str) -> Optional[ResourceNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self.nodes)

    def external_refs(self) -> set[tuple[str, str]]:
        """All (stage, name) references this graph makes into earlier stages."""
        refs: set[tuple[str, str]] = set()
        for node in self.nodes:
            refs.update(node.external_deps)
        return refs

    def topological_order(self) -> list[ResourceNode]:
        """Return nodes with dependencies before dependents.

        Kahn's algorithm; ties are broken by declaration order so the
        result is stable for identical input.
        """
        position = {n.name: i for i, n in enumerate(self.nodes)}
        indegree = {n.name: len(set(n.local_deps)) for n in self.nodes}
        children: dict[str, list[str]] = {n.name: [] for n in self.nodes}
        for node in self.nodes:
            for dep in set(node.local_deps):
                children[dep].append(node.name)

        # Heap of declaration positions: lowest-declared ready node goes first
        ready = [position[name] for name, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)
        ordered: list[ResourceNode] = []
        while ready:
            node = self.nodes[heapq.heappop(ready)]
            ordered.append(node)
            for child in children[node.name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, position[child])

        return ordered

    def with_state(self, version: int, outputs: Optional[dict] = None) -> 'ResourceGraph':
        """Copy of this graph stamped with a state version and outputs."""
        return ResourceGraph(
            stage=self.stage,
            nodes=[ResourceNode.from_dict(n.to_dict()) for n in self.nodes],
            version=version,
            outputs=dict(outputs or {}),
        )

    def to_dict(self) -> dict:
        """Convert graph to dictionary (for JSON/YAML serialization)."""
        return {
            'stage': self.stage,
            'version': self.version,
            'outputs': self.outputs,
            'resources': [n.to_dict() for n in self.nodes],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict, stage: Optional[str] = None) -> 'ResourceGraph':
        """Create ResourceGraph from dictionary.

        Args:
            data: Graph data with 'stage' and 'resources'
            stage: Expected stage; must match data['stage'] when both present

        Raises:
            GraphError: If the graph is invalid
        """
        graph_stage = data.get('stage', stage)
        if graph_stage is None:
            raise GraphError("Resource graph missing required field: stage")
        if stage is not None and graph_stage != stage:
            raise GraphError(f"Resource graph is for stage '{graph_stage}', expected '{stage}'")

        nodes = []
        for i, node_data in enumerate(data.get('resources') or []):
            if 'name' not in node_data:
                raise GraphError(f"Resource {i} missing required field: name")
            if 'type' not in node_data:
                raise GraphError(
                    f"Resource {i} ({node_data.get('name', 'unnamed')}) missing required field: type"
                )
            nodes.append(ResourceNode.from_dict(node_data))

        return cls(
            stage=graph_stage,
            nodes=nodes,
            version=int(data.get('version', 0)),
            outputs=dict(data.get('outputs') or {}),
        )

    @classmethod
    def empty(cls, stage: str) -> 'ResourceGraph':
        return cls(stage=stage)


def validate_graph(stage: str, nodes: list[ResourceNode]) -> None:
    """Validate the structure of a stage's resource graph.

    Checks for:
    - Unknown stage
    - Duplicate node names
    - Dangling local references
    - References to the same or a later stage via the qualified form
    - Cycles

    Raises:
        GraphError: If validation fails
    """
    if stage not in STAGE_ORDER:
        raise GraphError(f"Unknown stage '{stage}'. Supported: {', '.join(STAGE_ORDER)}")

    seen: set[str] = set()
    for node in nodes:
        if node.name in seen:
            raise GraphError(f"Duplicate resource name in stage '{stage}': '{node.name}'")
        if STAGE_SEPARATOR in node.name:
            raise GraphError(f"Resource name '{node.name}' must not contain '{STAGE_SEPARATOR}'")
        seen.add(node.name)

    stage_index = STAGE_ORDER.index(stage)
    for node in nodes:
        for ref in node.depends_on:
            ref_stage, ref_name = split_ref(ref)
            if ref_stage is None:
                if ref_name not in seen:
                    raise GraphError(
                        f"Resource '{node.name}' references unknown resource '{ref_name}'"
                    )
                continue
            if ref_stage not in STAGE_ORDER:
                raise GraphError(f"Resource '{node.name}' references unknown stage '{ref_stage}'")
            if STAGE_ORDER.index(ref_stage) >= stage_index:
                raise GraphError(
                    f"Resource '{node.name}' in stage '{stage}' may only reference "
                    f"earlier stages, not '{ref_stage}'"
                )

    # Cycle check via DFS over local edges
    deps = {n.name: n.local_deps for n in nodes}
    visited: set[str] = set()
    in_stack: set[str] = set()

    def _has_cycle(name: str) -> bool:
        if name in in_stack:
            return True
        if name in visited:
            return False
        visited.add(name)
        in_stack.add(name)
        for dep in deps.get(name, []):
            if _has_cycle(dep):
                return True
        in_stack.discard(name)
        return False

    for node in nodes:
        if _has_cycle(node.name):
            raise GraphError(f"Cycle detected in stage '{stage}' involving '{node.name}'")


def load_graph(path: Path, stage: Optional[str] = None) -> ResourceGraph:
    """Load a desired resource graph from a YAML file.

    Raises:
        GraphError: If the file is missing or the graph is invalid
    """
    path = Path(path)
    if not path.exists():
        raise GraphError(f"Resource graph file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise GraphError(f"Invalid YAML in resource graph {path}: {e}")

    if not isinstance(data, dict):
        raise GraphError(f"Resource graph {path} must be a YAML object (dict)")

    graph = ResourceGraph.from_dict(data, stage=stage)
    logger.debug(f"Loaded graph for stage '{graph.stage}' from {path} ({len(graph)} resources)")
    return graph
