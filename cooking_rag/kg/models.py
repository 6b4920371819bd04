"""
Data models for the Knowledge Graph module.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2
DEFAULT_MAX_NODES = 50
MAX_DEPTH_CEILING = 3
MAX_NODES_CEILING = 200


class QueryType(str, Enum):
    """Graph query shapes the traversal engine can execute."""
    ENTITY_RELATION = "entity_relation"
    MULTI_HOP = "multi_hop"
    SUBGRAPH = "subgraph"
    PATH_FINDING = "path_finding"
    CLUSTERING = "clustering"

    @classmethod
    def parse(cls, value: Any) -> "QueryType":
        """Map an LLM-provided label onto a query type; unknown labels become SUBGRAPH."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug(f"Unknown query type {value!r}, using subgraph")
            return cls.SUBGRAPH


def _bounded(value: Any, default: int, ceiling: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return min(number, ceiling)


@dataclass
class GraphQueryPlan:
    """Structured graph query plan; depth and node budget are always within (0, ceiling]."""
    query_type: QueryType
    source_entities: List[str]
    target_entities: List[str] = field(default_factory=list)
    relation_types: List[str] = field(default_factory=list)
    max_depth: int = DEFAULT_MAX_DEPTH
    max_nodes: int = DEFAULT_MAX_NODES
    constraints: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""

    def __post_init__(self):
        if not isinstance(self.query_type, QueryType):
            self.query_type = QueryType.parse(self.query_type)
        self.max_depth = _bounded(self.max_depth, DEFAULT_MAX_DEPTH, MAX_DEPTH_CEILING)
        self.max_nodes = _bounded(self.max_nodes, DEFAULT_MAX_NODES, MAX_NODES_CEILING)

    @classmethod
    def default_for(cls, query: str) -> "GraphQueryPlan":
        """Plan used whenever classification is unavailable."""
        return cls(
            query_type=QueryType.SUBGRAPH,
            source_entities=[query],
            max_depth=DEFAULT_MAX_DEPTH,
            max_nodes=DEFAULT_MAX_NODES,
            reasoning="fallback plan"
        )


@dataclass
class GraphNode:
    """A node record returned by the graph store."""
    node_id: str
    name: str
    labels: List[str] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)
    degree: int = 0

    @property
    def node_type(self) -> str:
        return self.labels[0] if self.labels else "Unknown"

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "GraphNode":
        """Build a node from the map projection used by the Cypher queries."""
        properties = dict(data.get("properties") or {})
        node_id = data.get("id") or properties.get("nodeId") or ""
        name = data.get("name") or properties.get("name") or ""
        return cls(
            node_id=str(node_id),
            name=str(name),
            labels=list(data.get("labels") or []),
            properties=properties,
            degree=int(data.get("degree") or 0)
        )


@dataclass
class GraphRelation:
    """A relationship record returned by the graph store."""
    relation_type: str
    source_id: str = ""
    target_id: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "GraphRelation":
        return cls(
            relation_type=str(data.get("type") or ""),
            source_id=str(data.get("source_id") or ""),
            target_id=str(data.get("target_id") or ""),
            properties=dict(data.get("properties") or {})
        )


@dataclass
class GraphPath:
    """An ordered path through the graph with its relevance score."""
    nodes: List[GraphNode]
    relationships: List[GraphRelation]
    path_length: int
    relevance_score: float
    path_type: str

    def __post_init__(self):
        if self.nodes and len(self.relationships) != len(self.nodes) - 1:
            raise ValueError(
                f"Path with {len(self.nodes)} nodes needs {len(self.nodes) - 1} relationships, "
                f"got {len(self.relationships)}"
            )


@dataclass
class KnowledgeSubgraph:
    """Neighbourhood of a set of central entities."""
    central_nodes: List[GraphNode]
    connected_nodes: List[GraphNode]
    relationships: List[GraphRelation]
    graph_metrics: Dict[str, float] = field(default_factory=dict)
    reasoning_chains: List[List[str]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.central_nodes and not self.connected_nodes


def graph_density(node_count: int, edge_count: int) -> float:
    """Undirected density 2E / (n(n-1)); zero for fewer than two nodes."""
    if node_count <= 1:
        return 0.0
    return 2.0 * edge_count / (node_count * (node_count - 1))


@dataclass
class EntityKeyValue:
    """Keyword index entry for one graph entity."""
    entity_id: str
    entity_name: str
    entity_type: str
    content: str
    base_relevance: float = 0.8
    index_keys: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> str:
        return str(self.metadata.get("category") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type,
            "content": self.content,
            "base_relevance": self.base_relevance,
            "index_keys": list(self.index_keys),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityKeyValue":
        return cls(
            entity_id=data["entity_id"],
            entity_name=data.get("entity_name", ""),
            entity_type=data.get("entity_type", "Unknown"),
            content=data.get("content", ""),
            base_relevance=float(data.get("base_relevance", 0.8)),
            index_keys=list(data.get("index_keys", [])),
            metadata=dict(data.get("metadata", {}))
        )


@dataclass
class RelationKeyValue:
    """Keyword index entry for one graph relationship."""
    relation_id: str
    relation_type: str
    source_entity: str
    target_entity: str
    content: str
    index_keys: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return f"{self.source_entity}_{self.target_entity}_{self.relation_type}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relation_id": self.relation_id,
            "relation_type": self.relation_type,
            "source_entity": self.source_entity,
            "target_entity": self.target_entity,
            "content": self.content,
            "index_keys": list(self.index_keys),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationKeyValue":
        return cls(
            relation_id=data["relation_id"],
            relation_type=data.get("relation_type", ""),
            source_entity=data.get("source_entity", ""),
            target_entity=data.get("target_entity", ""),
            content=data.get("content", ""),
            index_keys=list(data.get("index_keys", [])),
            metadata=dict(data.get("metadata", {}))
        )
