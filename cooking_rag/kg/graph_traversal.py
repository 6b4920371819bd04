"""
Graph Traversal Engine executing typed graph queries against Neo4j.
"""

import logging
from typing import Dict, Any, List, Callable, Optional, Tuple

from .models import (
    GraphQueryPlan, GraphPath, GraphNode, GraphRelation, KnowledgeSubgraph,
    QueryType, graph_density
)
from .neo4j_client import Neo4jGraphClient

logger = logging.getLogger(__name__)

SOURCE_MATCH = """
UNWIND $source_entities AS source_name
MATCH (source)
WHERE source.name CONTAINS source_name OR source.nodeId = source_name
"""

# Path score: short paths, well-connected nodes, and requested relation types rank higher.
PATH_SCORING = """
WITH path, length(path) AS path_len, relationships(path) AS rels, nodes(path) AS path_nodes
WITH path_len, rels, path_nodes,
     (1.0 / path_len)
     + (REDUCE(s = 0.0, n IN path_nodes | s + COUNT { (n)--() }) / 10.0 / size(path_nodes))
     + (CASE WHEN ANY(r IN rels WHERE type(r) IN $relation_types) THEN 0.3 ELSE 0.0 END) AS relevance
"""

PATH_RETURN = """
ORDER BY relevance DESC
LIMIT $limit
RETURN path_len, relevance,
       [n IN path_nodes | {id: n.nodeId, name: n.name, labels: labels(n),
                           properties: properties(n), degree: COUNT { (n)--() }}] AS nodes,
       [r IN rels | {type: type(r), source_id: startNode(r).nodeId,
                     target_id: endNode(r).nodeId, properties: properties(r)}] AS rels
"""

TARGET_FILTER = """
AND (ANY(label IN labels(target) WHERE label IN $target_entities)
     OR ANY(t IN $target_entities WHERE target.name CONTAINS t OR target.nodeId = t
            OR coalesce(target.category, '') CONTAINS t))
"""

SUBGRAPH_QUERY = SOURCE_MATCH + """
WITH DISTINCT source
LIMIT $max_sources
MATCH path = (source)-[*1..{depth}]-(neighbor)
WHERE neighbor <> source
WITH source, neighbor, relationships(path) AS path_rels
UNWIND path_rels AS rel
WITH source, collect(DISTINCT neighbor) AS neighbors, collect(DISTINCT rel) AS rels
RETURN {{id: source.nodeId, name: source.name, labels: labels(source),
        properties: properties(source), degree: COUNT {{ (source)--() }}}} AS source,
       [n IN neighbors[0..$max_nodes] | {{id: n.nodeId, name: n.name, labels: labels(n),
                                          properties: properties(n), degree: COUNT {{ (n)--() }}}}] AS nodes,
       [r IN rels[0..$max_nodes] | {{type: type(r), source_id: startNode(r).nodeId,
                                      target_id: endNode(r).nodeId, properties: properties(r)}}] AS rels
"""


class GraphTraversalEngine:
    """Builds bounded Cypher queries from a GraphQueryPlan and parses the results."""

    def __init__(self, graph_client: Neo4jGraphClient, config: Dict[str, Any]):
        self.graph_client = graph_client
        self.config = config
        self.path_limit = config.get("path_limit", 20)
        self.max_sources = config.get("max_source_matches", 10)

        self._path_builders: Dict[QueryType, Callable[[GraphQueryPlan], str]] = {
            QueryType.MULTI_HOP: self._multi_hop_query,
            QueryType.PATH_FINDING: self._path_finding_query,
            QueryType.ENTITY_RELATION: self._entity_relation_query,
            QueryType.CLUSTERING: self._clustering_query,
            QueryType.SUBGRAPH: self._multi_hop_query,
        }

    def _multi_hop_query(self, plan: GraphQueryPlan) -> str:
        target_filter = TARGET_FILTER if plan.target_entities else ""
        return (
            SOURCE_MATCH
            + f"MATCH path = (source)-[*1..{plan.max_depth}]-(target)\n"
            + "WHERE source <> target\n"
            + target_filter
            + PATH_SCORING
            + PATH_RETURN
        )

    def _path_finding_query(self, plan: GraphQueryPlan) -> str:
        if not plan.target_entities:
            return self._multi_hop_query(plan)
        return (
            SOURCE_MATCH
            + "UNWIND $target_entities AS target_name\n"
            + "MATCH (target)\n"
            + "WHERE (target.name CONTAINS target_name OR target.nodeId = target_name) AND target <> source\n"
            + f"MATCH path = shortestPath((source)-[*1..{plan.max_depth}]-(target))\n"
            + PATH_SCORING
            + PATH_RETURN
        )

    def _entity_relation_query(self, plan: GraphQueryPlan) -> str:
        target_filter = ""
        if plan.target_entities:
            target_filter = "AND ANY(t IN $target_entities WHERE target.name CONTAINS t OR target.nodeId = t)\n"
        return (
            SOURCE_MATCH
            + "MATCH path = (source)-[]-(target)\n"
            + "WHERE source <> target\n"
            + target_filter
            + PATH_SCORING
            + PATH_RETURN
        )

    def _clustering_query(self, plan: GraphQueryPlan) -> str:
        return (
            SOURCE_MATCH
            + "MATCH path = (source)--(shared)--(similar)\n"
            + "WHERE similar <> source AND ANY(label IN labels(similar) WHERE label IN labels(source))\n"
            + "WITH source, similar, collect(path)[0] AS path, count(DISTINCT shared) AS shared_count\n"
            + "WITH path, length(path) AS path_len, relationships(path) AS rels, nodes(path) AS path_nodes, shared_count\n"
            + "WITH path_len, rels, path_nodes, (1.0 / path_len) + (shared_count / 10.0) AS relevance\n"
            + PATH_RETURN
        )

    def build_path_query(self, plan: GraphQueryPlan) -> Tuple[str, Dict[str, Any]]:
        """Cypher text and parameters for a path-shaped plan."""
        query = self._path_builders[plan.query_type](plan)
        params = {
            "source_entities": list(plan.source_entities),
            "target_entities": list(plan.target_entities),
            "relation_types": list(plan.relation_types),
            "limit": self.path_limit,
        }
        return query, params

    async def traverse(self, plan: GraphQueryPlan) -> List[GraphPath]:
        """
        Run a path query for the plan and return at most ``path_limit`` paths by relevance.

        Raises:
            GraphStoreError: if the graph store query fails.
        """
        if not plan.source_entities:
            return []

        query, params = self.build_path_query(plan)
        logger.debug(f"Traversal {plan.query_type.value} depth={plan.max_depth} sources={plan.source_entities}")
        records = await self.graph_client.run_read(query, params)

        paths = [self._parse_path(record, plan.query_type.value) for record in records]
        paths = [path for path in paths if path is not None]
        paths.sort(key=lambda p: p.relevance_score, reverse=True)

        logger.info(f"Traversal found {len(paths)} paths")
        return paths[:self.path_limit]

    @staticmethod
    def _parse_path(record: Dict[str, Any], path_type: str) -> Optional[GraphPath]:
        nodes = [GraphNode.from_record(n) for n in record.get("nodes") or []]
        rels = [GraphRelation.from_record(r) for r in record.get("rels") or []]
        if nodes and len(rels) != len(nodes) - 1:
            logger.warning(f"Skipping malformed path: {len(nodes)} nodes, {len(rels)} relationships")
            return None

        return GraphPath(
            nodes=nodes,
            relationships=rels,
            path_length=int(record.get("path_len") or len(rels)),
            relevance_score=float(record.get("relevance") or 0.0),
            path_type=path_type
        )

    async def extract_subgraph(self, plan: GraphQueryPlan) -> KnowledgeSubgraph:
        """
        Expand the plan's source entities up to ``max_depth`` hops.

        Neighbour and relationship sets are each truncated to ``max_nodes``.

        Raises:
            GraphStoreError: if the graph store query fails.
        """
        if not plan.source_entities:
            return KnowledgeSubgraph([], [], [], {"node_count": 0, "relationship_count": 0, "density": 0.0})

        query = SUBGRAPH_QUERY.format(depth=plan.max_depth)
        records = await self.graph_client.run_read(query, {
            "source_entities": list(plan.source_entities),
            "max_sources": self.max_sources,
            "max_nodes": plan.max_nodes,
        })
        return self.build_subgraph(records, plan.max_nodes)

    @staticmethod
    def build_subgraph(records: List[Dict[str, Any]], max_nodes: int) -> KnowledgeSubgraph:
        """Merge per-source subgraph records into one deduplicated, bounded subgraph."""
        central: Dict[str, GraphNode] = {}
        connected: Dict[str, GraphNode] = {}
        relations: Dict[Tuple[str, str, str], GraphRelation] = {}

        for record in records:
            source = GraphNode.from_record(record.get("source") or {})
            if source.node_id:
                central.setdefault(source.node_id, source)
            for data in record.get("nodes") or []:
                node = GraphNode.from_record(data)
                if node.node_id:
                    connected.setdefault(node.node_id, node)
            for data in record.get("rels") or []:
                rel = GraphRelation.from_record(data)
                relations.setdefault((rel.relation_type, rel.source_id, rel.target_id), rel)

        connected_nodes = [n for node_id, n in connected.items() if node_id not in central][:max_nodes]
        relationships = list(relations.values())[:max_nodes]

        node_count = len(central) + len(connected_nodes)
        metrics = {
            "node_count": node_count,
            "connected_count": len(connected_nodes),
            "relationship_count": len(relationships),
            "density": graph_density(node_count, len(relationships)),
        }
        return KnowledgeSubgraph(
            central_nodes=list(central.values()),
            connected_nodes=connected_nodes,
            relationships=relationships,
            graph_metrics=metrics
        )
