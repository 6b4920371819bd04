"""
Hybrid retrieval: dual-level keyword retrieval and vector retrieval run
concurrently and are merged position by position.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

from ..kg.graph_index import GraphIndex
from ..kg.neo4j_client import GraphStoreError, Neo4jGraphClient
from ..models.llm_manager import QueryLLM
from .keyword_retrieval import DualLevelRetriever
from .models import AnnotationKey, Document, RetrievalResult, filter_annotations, round_robin_merge
from .vector_store import PineconeVectorStore, VectorSearchResult, VectorStoreError

logger = logging.getLogger(__name__)

SEARCH_METHODS = ("dual_level", "vector_enhanced")


def vector_similarity(distance: float) -> float:
    """Cosine distance to a similarity in [0, 1]."""
    return max(0.0, 1.0 - distance)


class HybridRetrievalModule:
    """Traditional retrieval: keyword index plus vector search, fair-merged."""

    def __init__(
        self,
        config: Dict[str, Any],
        graph_client: Optional[Neo4jGraphClient],
        index: GraphIndex,
        vector_store: Optional[PineconeVectorStore] = None,
        llm: Optional[QueryLLM] = None
    ):
        self.config = config
        self.graph_client = graph_client
        self.index = index
        self.vector_store = vector_store
        self.retriever = DualLevelRetriever(config, index, graph_client, llm)

        self.deduplicate_index = config.get("deduplicate_index", True)
        self.index_cache_path = config.get("index_cache_path")
        self.vector_neighbor_limit = config.get("vector_neighbor_limit", 3)
        self.initialized = False

    async def initialize(self) -> Dict[str, Any]:
        """Build the keyword index from the graph, or load the cached export when offline."""
        if self.graph_client is not None and self.graph_client.is_connected:
            try:
                nodes, relations = await self.graph_client.load_graph_data()
                await self.index.build(nodes, relations)
                if self.deduplicate_index:
                    self.index.deduplicate()
            except GraphStoreError as e:
                logger.error(f"Failed to build graph index: {e}")
        elif self.index_cache_path and Path(self.index_cache_path).exists():
            logger.info(f"Graph store offline, loading index cache {self.index_cache_path}")
            self.index.import_from_json(Path(self.index_cache_path))
        else:
            logger.warning("Graph store offline and no index cache, keyword index is empty")

        self.initialized = True
        return self.index.get_statistics()

    @staticmethod
    def result_to_document(result: RetrievalResult) -> Document:
        annotations = filter_annotations(result.metadata)
        annotations.update({
            AnnotationKey.NODE_ID.value: result.node_id,
            AnnotationKey.NODE_TYPE.value: result.node_type,
            AnnotationKey.RETRIEVAL_LEVEL.value: result.retrieval_level,
            AnnotationKey.RELEVANCE_SCORE.value: result.relevance_score,
            AnnotationKey.RECIPE_NAME.value: result.metadata.get("name") or "未知菜品",
            AnnotationKey.SEARCH_TYPE.value: "dual_level",
        })
        return Document(id=result.node_id, content=result.content, annotations=annotations)

    async def dual_level_retrieval(self, query: str, top_k: int = 5) -> List[Document]:
        """Entity-level and topic-level results, deduplicated by node id keeping the best score."""
        entity_keywords, topic_keywords = await self.retriever.extract_query_keywords(query)

        entity_results, topic_results = await asyncio.gather(
            self.retriever.entity_level_retrieval(entity_keywords, top_k),
            self.retriever.topic_level_retrieval(topic_keywords, top_k)
        )

        combined = sorted(entity_results + topic_results, key=lambda r: r.relevance_score, reverse=True)
        seen = set()
        documents = []
        for result in combined:
            if result.node_id in seen:
                continue
            seen.add(result.node_id)
            documents.append(self.result_to_document(result))

        logger.info(f"Dual-level retrieval: {len(documents)} documents")
        return documents[:top_k]

    async def _vector_document(self, result: VectorSearchResult) -> Document:
        annotations = filter_annotations(result.metadata)
        similarity = vector_similarity(result.distance)
        content = result.text

        node_id = annotations.get(AnnotationKey.NODE_ID.value)
        if node_id and self.graph_client is not None and self.graph_client.is_connected:
            try:
                neighbors = await self.graph_client.get_node_neighbors(node_id, self.vector_neighbor_limit)
                if neighbors:
                    content += f"\n相关信息: {', '.join(neighbors)}"
            except GraphStoreError as e:
                logger.debug(f"Neighbor lookup failed for {node_id}: {e}")

        annotations.update({
            AnnotationKey.DISTANCE.value: result.distance,
            AnnotationKey.RELEVANCE_SCORE.value: similarity,
            AnnotationKey.RETRIEVAL_LEVEL.value: "vector",
            AnnotationKey.SEARCH_TYPE.value: "vector_enhanced",
        })
        annotations.setdefault(AnnotationKey.RECIPE_NAME.value, "未知菜品")
        return Document(id=result.id, content=content, annotations=annotations)

    async def vector_search_enhanced(self, query: str, top_k: int = 5) -> List[Document]:
        """Nearest documents from the vector store, enriched with graph neighbours."""
        if self.vector_store is None or top_k <= 0:
            return []

        results = await self.vector_store.similarity_search(query, top_k)
        documents = await asyncio.gather(*(self._vector_document(r) for r in results))
        logger.info(f"Vector retrieval: {len(documents)} documents")
        return list(documents)

    async def hybrid_search(self, query: str, top_k: int = 5) -> List[Document]:
        """
        Run both retrievals concurrently and merge them round-robin, dual-level first.

        A failing side contributes no documents.
        """
        if top_k <= 0:
            return []

        dual_docs, vector_docs = await asyncio.gather(
            self.dual_level_retrieval(query, top_k),
            self.vector_search_enhanced(query, top_k),
            return_exceptions=True
        )
        if isinstance(dual_docs, BaseException):
            if not isinstance(dual_docs, Exception):
                raise dual_docs
            logger.error(f"Dual-level retrieval failed: {dual_docs}")
            dual_docs = []
        if isinstance(vector_docs, BaseException):
            if not isinstance(vector_docs, Exception):
                raise vector_docs
            level = logging.WARNING if isinstance(vector_docs, VectorStoreError) else logging.ERROR
            logger.log(level, f"Vector retrieval failed: {vector_docs}")
            vector_docs = []

        merged = []
        for order, (doc, stream) in enumerate(round_robin_merge(dual_docs, vector_docs, top_k)):
            if stream == 0:
                final_score = doc.relevance_score
            else:
                final_score = vector_similarity(float(doc.get(AnnotationKey.DISTANCE, 1.0)))
            merged.append(doc.annotated({
                AnnotationKey.SEARCH_METHOD: SEARCH_METHODS[stream],
                AnnotationKey.ROUND_ROBIN_ORDER: order,
                AnnotationKey.FINAL_SCORE: final_score,
            }))

        logger.info(f"Hybrid search: {len(dual_docs)} dual-level + {len(vector_docs)} vector -> {len(merged)} merged")
        return merged

    async def search(self, query: str, top_k: int = 5) -> List[Document]:
        return await self.hybrid_search(query, top_k)
