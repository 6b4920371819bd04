"""
Async Neo4j client shared by the graph and hybrid retrieval components.

All access is read-only; writes belong to the ingestion pipeline.
"""

import asyncio
import logging
from typing import Dict, Any, List, Optional, Tuple

from neo4j import AsyncGraphDatabase, AsyncDriver
from neo4j.exceptions import Neo4jError, DriverError

from ..models.llm_manager import resolve_env_vars
from .models import GraphNode, GraphRelation

logger = logging.getLogger(__name__)

NODE_PROJECTION = (
    "{{id: {var}.nodeId, name: {var}.name, labels: labels({var}), "
    "properties: properties({var}), degree: COUNT {{ ({var})--() }}}}"
)

LOAD_RECIPES_QUERY = """
MATCH (r:Recipe)
WHERE r.nodeId IS NOT NULL
OPTIONAL MATCH (r)-[:BELONGS_TO_CATEGORY]->(c:Category)
WITH r, collect(c.name) AS categories
RETURN {node}, CASE WHEN size(categories) > 0 THEN categories[0] ELSE coalesce(r.category, '未知') END AS category
ORDER BY r.nodeId
LIMIT $limit
""".format(node=NODE_PROJECTION.format(var="r") + " AS node")

LOAD_NODES_QUERY = """
MATCH (n:{label})
WHERE n.nodeId IS NOT NULL
RETURN {node}, n.category AS category
ORDER BY n.nodeId
LIMIT $limit
"""

LOAD_RELATIONSHIPS_QUERY = """
MATCH (a)-[r]->(b)
WHERE a.nodeId IS NOT NULL AND b.nodeId IS NOT NULL
RETURN a.nodeId AS source_id, type(r) AS type, b.nodeId AS target_id, properties(r) AS properties
ORDER BY source_id, type, target_id
LIMIT $limit
"""

NEIGHBORS_QUERY = """
MATCH (n {nodeId: $node_id})-[]-(neighbor)
WHERE neighbor.name IS NOT NULL
RETURN DISTINCT neighbor.name AS name
LIMIT $limit
"""

STATS_QUERY = """
CALL {
    MATCH (n) RETURN count(n) AS node_count
}
CALL {
    MATCH ()-[r]->() RETURN count(r) AS relationship_count
}
RETURN node_count, relationship_count
"""


class GraphStoreError(RuntimeError):
    """Raised when the graph store cannot answer a query."""


class Neo4jGraphClient:
    """Thin async wrapper around the Neo4j driver returning plain dict records."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.uri = config.get("uri", "bolt://localhost:7687")
        self.username = config.get("username", "neo4j")
        self.password = resolve_env_vars(config.get("password", "${NEO4J_PASSWORD}"))
        self.database = config.get("database", "neo4j")
        self.query_timeout = config.get("query_timeout", 10.0)
        self.load_limit = config.get("load_limit", 5000)
        self._driver: Optional[AsyncDriver] = None

    @property
    def is_connected(self) -> bool:
        return self._driver is not None

    async def connect(self) -> bool:
        """Open the driver and verify connectivity; stays disconnected on failure."""
        if self._driver is not None:
            return True

        driver = AsyncGraphDatabase.driver(self.uri, auth=(self.username, self.password))
        try:
            await asyncio.wait_for(driver.verify_connectivity(), timeout=self.query_timeout)
        except (Neo4jError, DriverError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Neo4j unreachable at {self.uri}: {e}")
            await driver.close()
            return False

        self._driver = driver
        logger.info(f"Connected to Neo4j at {self.uri}")
        return True

    async def close(self):
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Neo4j connection closed")

    async def __aenter__(self) -> "Neo4jGraphClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @staticmethod
    async def _collect(tx, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        result = await tx.run(query, params)
        return [record.data() async for record in result]

    async def run_read(
        self,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """
        Execute a read transaction and return its records as dicts.

        Raises:
            GraphStoreError: when disconnected, on driver errors, or on timeout.
        """
        if self._driver is None:
            raise GraphStoreError("Neo4j driver is not connected")

        try:
            async with self._driver.session(database=self.database) as session:
                return await asyncio.wait_for(
                    session.execute_read(self._collect, query, params or {}),
                    timeout=timeout or self.query_timeout
                )
        except asyncio.TimeoutError as e:
            raise GraphStoreError(f"Neo4j query timed out after {timeout or self.query_timeout}s") from e
        except (Neo4jError, DriverError, OSError) as e:
            raise GraphStoreError(f"Neo4j query failed: {e}") from e

    async def get_node_neighbors(self, node_id: str, limit: int = 2) -> List[str]:
        """Names of up to ``limit`` direct neighbours of a node."""
        if limit <= 0:
            return []
        records = await self.run_read(NEIGHBORS_QUERY, {"node_id": node_id, "limit": limit})
        return [record["name"] for record in records if record.get("name")]

    async def load_graph_data(self) -> Tuple[List[GraphNode], List[GraphRelation]]:
        """Load recipes, ingredients, cooking steps and the relationships between them."""
        nodes: List[GraphNode] = []

        for record in await self.run_read(LOAD_RECIPES_QUERY, {"limit": self.load_limit}):
            node = GraphNode.from_record(record["node"])
            node.properties["category"] = record.get("category") or "未知"
            nodes.append(node)

        for label in ("Ingredient", "CookingStep"):
            query = LOAD_NODES_QUERY.format(label=label, node=NODE_PROJECTION.format(var="n") + " AS node")
            for record in await self.run_read(query, {"limit": self.load_limit}):
                nodes.append(GraphNode.from_record(record["node"]))

        relations = [
            GraphRelation.from_record(record)
            for record in await self.run_read(LOAD_RELATIONSHIPS_QUERY, {"limit": self.load_limit * 4})
        ]

        logger.info(f"Loaded {len(nodes)} nodes and {len(relations)} relationships from Neo4j")
        return nodes, relations

    async def get_stats(self) -> Dict[str, Any]:
        """Node and relationship counts, or the connection state when unreachable."""
        if not self.is_connected:
            return {"connected": False}
        try:
            records = await self.run_read(STATS_QUERY)
        except GraphStoreError as e:
            logger.warning(f"Failed to read graph stats: {e}")
            return {"connected": True, "error": str(e)}

        stats = records[0] if records else {}
        return {
            "connected": True,
            "uri": self.uri,
            "node_count": stats.get("node_count", 0),
            "relationship_count": stats.get("relationship_count", 0),
        }
