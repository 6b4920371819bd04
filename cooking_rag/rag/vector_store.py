"""
Pinecone-backed vector store used as the nearest-neighbour retrieval service.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from pinecone import Pinecone
from langchain_openai import OpenAIEmbeddings

from ..models.llm_manager import resolve_env_vars

logger = logging.getLogger(__name__)

OUTPUT_FIELDS = [
    "text", "node_id", "recipe_name", "node_type", "category",
    "cuisine_type", "difficulty", "doc_type", "chunk_id", "parent_id",
]


class VectorStoreError(RuntimeError):
    """Raised when the vector store cannot answer a search."""


@dataclass
class VectorSearchResult:
    """One nearest-neighbour hit."""
    id: str
    distance: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_filter(filters: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Translate simple equality/membership filters into a Pinecone metadata filter."""
    if not filters:
        return None

    clauses = []
    for key, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            clauses.append({key: {"$in": list(value)}})
        else:
            clauses.append({key: {"$eq": value}})

    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


class PineconeVectorStore:
    """Nearest-neighbour search over an existing Pinecone index."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.index_name = config.get("index_name", "cooking-knowledge")
        self.namespace = config.get("namespace", "")
        self.timeout = config.get("timeout", 15.0)

        api_key = resolve_env_vars(config.get("api_key", "${PINECONE_API_KEY}"))
        if not api_key or api_key.startswith("${"):
            api_key = os.getenv("PINECONE_API_KEY")
        if not api_key:
            raise ValueError("Pinecone API key must be provided")

        self.pc = Pinecone(api_key=api_key)
        self.embedder = OpenAIEmbeddings(model=config.get("embedding_model", "text-embedding-3-small"))
        self._setup_index()

        logger.info(f"Pinecone vector store initialized (index={self.index_name})")

    def _setup_index(self):
        """Attach to the configured index; creating it belongs to ingestion."""
        if self.index_name not in self.pc.list_indexes().names():
            raise ValueError(f"Pinecone index {self.index_name} does not exist")
        self.index = self.pc.Index(self.index_name)

    def _query(self, vector: List[float], top_k: int, metadata_filter: Optional[Dict[str, Any]]):
        params = {"vector": vector, "top_k": top_k, "include_metadata": True}
        if metadata_filter:
            params["filter"] = metadata_filter
        if self.namespace:
            params["namespace"] = self.namespace
        return self.index.query(**params)

    async def similarity_search(
        self,
        query: str,
        top_k: int = 5,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[VectorSearchResult]:
        """
        Return the ``top_k`` nearest documents to the query text.

        Distances are cosine distances (1 - similarity).

        Raises:
            VectorStoreError: on embedding, query, or timeout failures.
        """
        if top_k <= 0:
            return []

        try:
            vector = await asyncio.wait_for(self.embedder.aembed_query(query), timeout=self.timeout)
            response = await asyncio.wait_for(
                asyncio.to_thread(self._query, vector, top_k, build_filter(filters)),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise VectorStoreError(f"Pinecone search timed out after {self.timeout}s") from e
        except Exception as e:
            raise VectorStoreError(f"Pinecone search failed: {e}") from e

        results = []
        for match in response.matches:
            metadata = dict(match.metadata or {})
            results.append(VectorSearchResult(
                id=match.id,
                distance=1.0 - float(match.score or 0.0),
                text=metadata.pop("text", ""),
                metadata={k: v for k, v in metadata.items() if k in OUTPUT_FIELDS}
            ))

        logger.debug(f"Pinecone returned {len(results)} matches")
        return results

    def get_stats(self) -> Dict[str, Any]:
        """Get Pinecone index statistics."""
        try:
            index_stats = self.index.describe_index_stats()
            return {
                "index_name": self.index_name,
                "total_vector_count": index_stats.total_vector_count,
                "dimension": index_stats.dimension,
                "metric": getattr(index_stats, "metric", "cosine"),
            }
        except Exception as e:
            logger.error(f"Failed to get Pinecone stats: {e}")
            return {"error": str(e)}
