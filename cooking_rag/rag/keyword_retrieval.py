"""
Dual-level keyword retrieval: entity-level and topic-level lookups against the
graph index, topped up with live graph queries.
"""

import asyncio
import logging
from typing import Dict, Any, List, Optional, Set, Tuple

from ..kg.graph_index import GraphIndex
from ..kg.neo4j_client import GraphStoreError, Neo4jGraphClient
from ..models.llm_manager import QueryLLM
from .models import RetrievalResult

logger = logging.getLogger(__name__)

ENTITY_FALLBACK_QUERY = """
UNWIND $keywords AS keyword
MATCH (n)
WHERE n.nodeId IS NOT NULL
  AND (n.name CONTAINS keyword
       OR coalesce(n.description, '') CONTAINS keyword
       OR coalesce(n.category, '') CONTAINS keyword)
RETURN n.nodeId AS node_id, n.name AS name, labels(n) AS labels,
       n.category AS category, n.description AS description, keyword
LIMIT $limit
"""

TOPIC_FALLBACK_QUERY = """
UNWIND $keywords AS keyword
MATCH (r:Recipe)
WHERE r.nodeId IS NOT NULL
  AND (coalesce(r.category, '') CONTAINS keyword
       OR coalesce(r.cuisineType, '') CONTAINS keyword
       OR coalesce(r.tags, '') CONTAINS keyword)
OPTIONAL MATCH (r)-[:REQUIRES]->(i:Ingredient)
WITH r, keyword, collect(i.name)[0..3] AS ingredients
RETURN r.nodeId AS node_id, r.name AS name, r.category AS category,
       r.cuisineType AS cuisine_type, r.difficulty AS difficulty,
       r.description AS description, ingredients, keyword
LIMIT $limit
"""


def _sort_and_truncate(results: List[RetrievalResult], top_k: int) -> List[RetrievalResult]:
    results.sort(key=lambda r: r.relevance_score, reverse=True)
    return results[:max(top_k, 0)]


class DualLevelRetriever:
    """Entity-level and topic-level keyword retrieval."""

    def __init__(
        self,
        config: Dict[str, Any],
        index: GraphIndex,
        graph_client: Optional[Neo4jGraphClient] = None,
        llm: Optional[QueryLLM] = None
    ):
        self.config = config
        self.index = index
        self.graph_client = graph_client
        self.llm = llm

        self.entity_match_score = config.get("entity_match_score", 0.9)
        self.entity_fallback_score = config.get("entity_fallback_score", 0.7)
        self.topic_match_score = config.get("topic_match_score", 0.85)
        self.topic_fallback_score = config.get("topic_fallback_score", 0.75)
        self.neighbor_limit = config.get("entity_neighbor_limit", 2)
        self.entity_cues = config.get("entity_cues", ["菜", "肉", "蛋"])
        self.keyword_timeout = config.get("keyword_timeout", 15.0)

    @property
    def _graph_available(self) -> bool:
        return self.graph_client is not None and self.graph_client.is_connected

    async def extract_query_keywords(self, query: str) -> Tuple[List[str], List[str]]:
        """Entity-level and topic-level keywords; rule-based when the LLM is unavailable or fails."""
        if self.llm is not None:
            try:
                entity_keywords, topic_keywords = await asyncio.wait_for(
                    self.llm.extract_keywords(query), timeout=self.keyword_timeout
                )
                if entity_keywords or topic_keywords:
                    logger.info(f"LLM keywords - entity: {entity_keywords}, topic: {topic_keywords}")
                    return entity_keywords, topic_keywords
                logger.warning("LLM returned no keywords, using fallback")
            except Exception as e:
                logger.warning(f"LLM keyword extraction failed: {e}, using fallback")

        return self.fallback_keywords(query)

    def fallback_keywords(self, query: str) -> Tuple[List[str], List[str]]:
        """Split on whitespace; tokens with a dish/protein cue are entity keywords."""
        entity_keywords, topic_keywords = [], []
        for token in query.split():
            if len(token) <= 1 and token.isascii():
                continue
            if any(cue in token for cue in self.entity_cues):
                entity_keywords.append(token)
            else:
                topic_keywords.append(token)
        return entity_keywords, topic_keywords

    async def _with_neighbors(self, result: RetrievalResult) -> RetrievalResult:
        if not self._graph_available or self.neighbor_limit <= 0:
            return result
        try:
            neighbors = await self.graph_client.get_node_neighbors(result.node_id, self.neighbor_limit)
        except GraphStoreError as e:
            logger.debug(f"Neighbor lookup failed for {result.node_id}: {e}")
            return result
        if neighbors:
            result.content += f"\n相关信息: {', '.join(neighbors[:self.neighbor_limit])}"
        return result

    async def entity_level_retrieval(self, keywords: List[str], top_k: int = 5) -> List[RetrievalResult]:
        """Case-insensitive substring match of entity keywords against indexed entities."""
        if not keywords or top_k <= 0:
            return []

        results: List[RetrievalResult] = []
        seen: Set[str] = set()
        entities = list(self.index.entities.values())

        for keyword in keywords:
            needle = keyword.lower()
            for entity in entities:
                if entity.entity_id in seen:
                    continue
                if needle in entity.content.lower() or needle in entity.entity_id.lower():
                    seen.add(entity.entity_id)
                    results.append(RetrievalResult(
                        content=entity.content,
                        node_id=entity.entity_id,
                        node_type=entity.entity_type,
                        relevance_score=self.entity_match_score,
                        retrieval_level="entity",
                        metadata={
                            "name": entity.metadata.get("name", entity.entity_name),
                            "category": entity.category,
                            "degree": entity.metadata.get("degree", 0),
                            "matched_keyword": keyword,
                            "source": "graph_index",
                        }
                    ))

        results = _sort_and_truncate(results, top_k)
        results = list(await asyncio.gather(*(self._with_neighbors(r) for r in results)))

        if len(results) < top_k and self._graph_available:
            results.extend(await self._entity_fallback(keywords, top_k - len(results), seen))

        logger.info(f"Entity-level retrieval: {len(results)} results for {keywords}")
        return _sort_and_truncate(results, top_k)

    async def _entity_fallback(self, keywords: List[str], limit: int, seen: Set[str]) -> List[RetrievalResult]:
        try:
            records = await self.graph_client.run_read(ENTITY_FALLBACK_QUERY, {"keywords": keywords, "limit": limit * 3})
        except GraphStoreError as e:
            logger.warning(f"Entity fallback query failed: {e}")
            return []

        results = []
        for record in records:
            node_id = record.get("node_id")
            if not node_id or node_id in seen:
                continue
            seen.add(node_id)
            labels = record.get("labels") or []
            lines = [f"名称: {record.get('name') or ''}"]
            if record.get("category"):
                lines.append(f"分类: {record['category']}")
            if record.get("description"):
                lines.append(f"描述: {record['description']}")
            results.append(RetrievalResult(
                content="\n".join(lines),
                node_id=node_id,
                node_type=labels[0] if labels else "Unknown",
                relevance_score=self.entity_fallback_score,
                retrieval_level="entity",
                metadata={
                    "name": record.get("name") or "",
                    "category": record.get("category") or "",
                    "matched_keyword": record.get("keyword"),
                    "source": "neo4j_fallback",
                }
            ))
            if len(results) >= limit:
                break
        return results

    async def topic_level_retrieval(self, keywords: List[str], top_k: int = 5) -> List[RetrievalResult]:
        """Match topic keywords against entity categories, topped up with recipe lookups."""
        if not keywords or top_k <= 0:
            return []

        results: List[RetrievalResult] = []
        seen: Set[str] = set()
        entities = list(self.index.entities.values())

        for keyword in keywords:
            for entity in entities:
                if entity.entity_id in seen or not entity.category:
                    continue
                if keyword.lower() in entity.category.lower():
                    seen.add(entity.entity_id)
                    results.append(RetrievalResult(
                        content=f"主题分类: {keyword}\n{entity.content}",
                        node_id=entity.entity_id,
                        node_type=entity.entity_type,
                        relevance_score=self.topic_match_score,
                        retrieval_level="topic",
                        metadata={
                            "name": entity.metadata.get("name", entity.entity_name),
                            "category": entity.category,
                            "matched_keyword": keyword,
                            "source": "graph_index",
                        }
                    ))

        results = _sort_and_truncate(results, top_k)

        if len(results) < top_k and self._graph_available:
            results.extend(await self._topic_fallback(keywords, top_k - len(results), seen))

        logger.info(f"Topic-level retrieval: {len(results)} results for {keywords}")
        return _sort_and_truncate(results, top_k)

    async def _topic_fallback(self, keywords: List[str], limit: int, seen: Set[str]) -> List[RetrievalResult]:
        try:
            records = await self.graph_client.run_read(TOPIC_FALLBACK_QUERY, {"keywords": keywords, "limit": limit * 3})
        except GraphStoreError as e:
            logger.warning(f"Topic fallback query failed: {e}")
            return []

        results = []
        for record in records:
            node_id = record.get("node_id")
            if not node_id or node_id in seen:
                continue
            seen.add(node_id)
            lines = [f"菜品: {record.get('name') or ''}"]
            for field_name, label in (("category", "分类"), ("cuisine_type", "菜系"),
                                      ("difficulty", "难度"), ("description", "描述")):
                if record.get(field_name):
                    lines.append(f"{label}: {record[field_name]}")
            ingredients = [i for i in record.get("ingredients") or [] if i]
            if ingredients:
                lines.append(f"主要食材: {'、'.join(ingredients)}")

            results.append(RetrievalResult(
                content="\n".join(lines),
                node_id=node_id,
                node_type="Recipe",
                relevance_score=self.topic_fallback_score,
                retrieval_level="topic",
                metadata={
                    "name": record.get("name") or "",
                    "category": record.get("category") or "",
                    "cuisine_type": record.get("cuisine_type") or "",
                    "matched_keyword": record.get("keyword"),
                    "source": "neo4j_fallback",
                }
            ))
            if len(results) >= limit:
                break
        return results
