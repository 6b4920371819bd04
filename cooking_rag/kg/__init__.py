"""
Neo4j knowledge graph access: graph client, traversal engine, Graph-RAG
retrieval and the keyword graph index.
"""

from .models import GraphQueryPlan, GraphPath, KnowledgeSubgraph, QueryType
from .neo4j_client import Neo4jGraphClient, GraphStoreError
from .graph_traversal import GraphTraversalEngine
from .graph_index import GraphIndex
from .graph_rag import GraphRAGRetrieval

__all__ = [
    "GraphQueryPlan", "GraphPath", "KnowledgeSubgraph", "QueryType",
    "Neo4jGraphClient", "GraphStoreError", "GraphTraversalEngine",
    "GraphIndex", "GraphRAGRetrieval",
]
