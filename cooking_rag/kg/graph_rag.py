"""
Graph-RAG retrieval: classify the query, traverse the graph, and turn paths or
subgraphs into ranked documents.
"""

import logging
from itertools import combinations
from typing import Dict, Any, List, Optional, Callable, Awaitable

import networkx as nx

from ..rag.models import AnnotationKey, Document
from .graph_traversal import GraphTraversalEngine
from .models import GraphPath, GraphQueryPlan, KnowledgeSubgraph, QueryType
from .neo4j_client import GraphStoreError, Neo4jGraphClient

logger = logging.getLogger(__name__)

COMPOSITION_TYPES = {"REQUIRES", "HAS_STEP", "CONTAINS", "CONTAINS_STEP", "HAS_INGREDIENT"}


def _edge_type(graph: nx.MultiDiGraph, source: str, target: str) -> str:
    data = graph.get_edge_data(source, target) or {}
    for attrs in data.values():
        if attrs.get("type"):
            return attrs["type"]
    return "相关"


def _causal_chain(graph: nx.MultiDiGraph, centrals: List[str]) -> List[str]:
    """Longest directed relation chain (at most 3 hops) leaving a central node."""
    best: List[str] = []
    for start in centrals:
        if start not in graph:
            continue
        paths = nx.single_source_shortest_path(graph, start, cutoff=3)
        for target in sorted(paths):
            path = paths[target]
            if len(path) > len(best):
                best = path
    if len(best) < 3:
        return []

    names = nx.get_node_attributes(graph, "name")
    steps = ["因果关系: " + " → ".join(names[n] for n in best)]
    for source, target in zip(best, best[1:]):
        steps.append(f"{names[source]} --{_edge_type(graph, source, target)}--> {names[target]}")
    return steps


def _compositional_chain(graph: nx.MultiDiGraph, centrals: List[str], limit: int = 5) -> List[str]:
    """A node and the parts it is composed of (ingredients, steps)."""
    candidates = centrals + sorted(n for n in graph.nodes if n not in centrals)
    names = nx.get_node_attributes(graph, "name")
    for node in candidates:
        parts = [
            (target, attrs["type"])
            for _, target, attrs in graph.out_edges(node, data=True)
            if attrs.get("type") in COMPOSITION_TYPES
        ]
        if parts:
            steps = [f"组成关系: {names[node]}"]
            steps.extend(f"{names[node]} --{rel_type}--> {names[target]}" for target, rel_type in parts[:limit])
            return steps
    return []


def _similarity_chain(graph: nx.MultiDiGraph, min_shared: int = 2) -> List[str]:
    """Two nodes of the same type with the most shared neighbours."""
    undirected = nx.Graph(graph.to_undirected())
    node_types = nx.get_node_attributes(graph, "node_type")
    names = nx.get_node_attributes(graph, "name")

    best = None
    for a, b in combinations(sorted(undirected.nodes), 2):
        if node_types.get(a) != node_types.get(b):
            continue
        shared = sorted(nx.common_neighbors(undirected, a, b))
        if len(shared) >= min_shared and (best is None or len(shared) > len(best[2])):
            best = (a, b, shared)
    if best is None:
        return []

    a, b, shared = best
    return [
        f"相似关系: {names[a]} ≈ {names[b]}",
        f"共同关联: {'、'.join(names[n] for n in shared[:5])}",
    ]


def build_reasoning_chains(subgraph: KnowledgeSubgraph, max_chains: int = 3) -> List[List[str]]:
    """Identify causal, compositional and similarity patterns in a subgraph."""
    graph = nx.MultiDiGraph()
    for node in subgraph.central_nodes + subgraph.connected_nodes:
        graph.add_node(node.node_id, name=node.name or node.node_id, node_type=node.node_type)
    for rel in subgraph.relationships:
        if rel.source_id in graph and rel.target_id in graph:
            graph.add_edge(rel.source_id, rel.target_id, type=rel.relation_type)

    if graph.number_of_edges() == 0:
        return []

    centrals = [node.node_id for node in subgraph.central_nodes]
    chains = [
        _causal_chain(graph, centrals),
        _compositional_chain(graph, centrals),
        _similarity_chain(graph),
    ]
    return [chain for chain in chains if chain][:max_chains]


def render_path(path: GraphPath) -> str:
    """Arrow-joined rendering of a path's node names and relation types."""
    if not path.nodes:
        return "空路径"

    parts = []
    for i, node in enumerate(path.nodes):
        parts.append(node.name or f"节点{i}")
        if i < len(path.relationships):
            parts.append(f" --{path.relationships[i].relation_type or '相关'}--> ")
    return "".join(parts)


def path_to_document(path: GraphPath, index: int) -> Document:
    recipe = next((n.name for n in path.nodes if "Recipe" in n.labels and n.name), None)
    if recipe is None:
        recipe = path.nodes[0].name if path.nodes and path.nodes[0].name else "图结构结果"

    return Document(
        id=f"graph_path_{index}",
        content=render_path(path),
        annotations={
            AnnotationKey.SEARCH_TYPE: "graph_path",
            AnnotationKey.RETRIEVAL_LEVEL: "graph_path",
            AnnotationKey.PATH_LENGTH: path.path_length,
            AnnotationKey.RELEVANCE_SCORE: path.relevance_score,
            AnnotationKey.PATH_TYPE: path.path_type,
            AnnotationKey.NODE_COUNT: len(path.nodes),
            AnnotationKey.RELATIONSHIP_COUNT: len(path.relationships),
            AnnotationKey.RECIPE_NAME: recipe,
        }
    )


def subgraph_to_document(subgraph: KnowledgeSubgraph) -> Document:
    central_names = [n.name for n in subgraph.central_nodes if n.name]
    metrics = subgraph.graph_metrics
    content = (
        f"关于 {'、'.join(central_names) or '查询实体'} 的知识网络，"
        f"包含 {len(subgraph.connected_nodes)} 个相关概念和 {len(subgraph.relationships)} 个关系。"
    )
    if subgraph.reasoning_chains:
        lines = [f"{i}. {'；'.join(chain)}" for i, chain in enumerate(subgraph.reasoning_chains, 1)]
        content += "\n推理链:\n" + "\n".join(lines)

    return Document(
        id="graph_subgraph_0",
        content=content,
        annotations={
            AnnotationKey.SEARCH_TYPE: "knowledge_subgraph",
            AnnotationKey.RETRIEVAL_LEVEL: "knowledge_subgraph",
            AnnotationKey.NODE_COUNT: metrics.get("node_count", 0),
            AnnotationKey.RELATIONSHIP_COUNT: metrics.get("relationship_count", 0),
            AnnotationKey.GRAPH_DENSITY: metrics.get("density", 0.0),
            AnnotationKey.REASONING_CHAINS: [list(chain) for chain in subgraph.reasoning_chains],
            AnnotationKey.RECIPE_NAME: central_names[0] if central_names else "知识子图",
        }
    )


class GraphRAGRetrieval:
    """Graph retrieval capability composed of classifier, traversal engine and chain builder."""

    def __init__(
        self,
        config: Dict[str, Any],
        graph_client: Neo4jGraphClient,
        classifier,
        traversal: Optional[GraphTraversalEngine] = None
    ):
        self.config = config
        self.graph_client = graph_client
        self.classifier = classifier
        self.traversal = traversal or GraphTraversalEngine(graph_client, config)
        self.max_reasoning_chains = config.get("max_reasoning_chains", 3)

        self._handlers: Dict[QueryType, Callable[[GraphQueryPlan], Awaitable[List[Document]]]] = {
            QueryType.MULTI_HOP: self._search_paths,
            QueryType.PATH_FINDING: self._search_paths,
            QueryType.ENTITY_RELATION: self._search_paths,
            QueryType.CLUSTERING: self._search_paths,
            QueryType.SUBGRAPH: self._search_subgraph,
        }

    async def _search_paths(self, plan: GraphQueryPlan) -> List[Document]:
        paths = await self.traversal.traverse(plan)
        return [path_to_document(path, i) for i, path in enumerate(paths)]

    async def _search_subgraph(self, plan: GraphQueryPlan) -> List[Document]:
        subgraph = await self.traversal.extract_subgraph(plan)
        if subgraph.is_empty:
            return []
        subgraph.reasoning_chains = build_reasoning_chains(subgraph, self.max_reasoning_chains)
        return [subgraph_to_document(subgraph)]

    async def search(self, query: str, top_k: int = 5) -> List[Document]:
        """
        Graph retrieval for a query.

        Returns an empty list when the graph store is not connected or a
        traversal fails; graph failures are never raised to the caller.
        """
        if top_k <= 0:
            return []
        if not self.graph_client.is_connected:
            logger.warning("Graph store not connected, graph retrieval returns no documents")
            return []

        plan = await self.classifier.classify(query)
        logger.info(f"Graph query plan: {plan.query_type.value}, sources={plan.source_entities}, depth={plan.max_depth}")

        try:
            documents = await self._handlers[plan.query_type](plan)
        except GraphStoreError as e:
            logger.error(f"Graph {plan.query_type.value} retrieval failed: {e}")
            return []

        documents.sort(key=lambda d: d.relevance_score, reverse=True)
        logger.info(f"Graph retrieval returned {min(len(documents), top_k)} of {len(documents)} documents")
        return documents[:top_k]
