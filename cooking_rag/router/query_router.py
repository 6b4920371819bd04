"""
Query Router for choosing between graph retrieval, hybrid retrieval, or both.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Any, List, Mapping, Optional, Tuple, Callable, Awaitable

from ..rag.models import AnnotationKey, Document, round_robin_merge

logger = logging.getLogger(__name__)

DEFAULT_COMPLEXITY_KEYWORDS = ["为什么", "如何", "关系", "影响", "原因", "比较", "区别", "分析", "推理"]
DEFAULT_RELATION_KEYWORDS = ["配", "搭配", "组合", "相关", "联系", "连接", "适合", "匹配"]


class SearchStrategy(str, Enum):
    """Retrieval strategies the router can dispatch to."""
    HYBRID_TRADITIONAL = "hybrid_traditional"
    GRAPH_RAG = "graph_rag"
    COMBINED = "combined"

    @classmethod
    def parse(cls, value: Any) -> "SearchStrategy":
        """Unknown or unset strategies resolve to hybrid retrieval."""
        try:
            return cls(value)
        except ValueError:
            return cls.HYBRID_TRADITIONAL


class RouteState(Enum):
    """Per-request routing states."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    DONE = "done"


@dataclass(frozen=True)
class QueryAnalysis:
    """Result of query analysis; created once per query."""
    query_complexity: float
    relationship_intensity: float
    reasoning_required: bool
    entity_count: int
    recommended_strategy: SearchStrategy
    confidence: float
    reasoning: str


@dataclass(frozen=True)
class RouteStatistics:
    """Read-only snapshot of routing counters and their ratios."""
    traditional_count: int = 0
    graph_rag_count: int = 0
    combined_count: int = 0
    total_queries: int = 0
    ratios: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({
        SearchStrategy.HYBRID_TRADITIONAL.value: 0.0,
        SearchStrategy.GRAPH_RAG.value: 0.0,
        SearchStrategy.COMBINED.value: 0.0,
    }))

    def __post_init__(self):
        if not isinstance(self.ratios, MappingProxyType):
            object.__setattr__(self, "ratios", MappingProxyType(dict(self.ratios)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "traditional_count": self.traditional_count,
            "graph_rag_count": self.graph_rag_count,
            "combined_count": self.combined_count,
            "total_queries": self.total_queries,
            "traditional_ratio": self.ratios[SearchStrategy.HYBRID_TRADITIONAL.value],
            "graph_rag_ratio": self.ratios[SearchStrategy.GRAPH_RAG.value],
            "combined_ratio": self.ratios[SearchStrategy.COMBINED.value],
        }


class RouteStatisticsTracker:
    """Thread-safe owner of the routing counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {strategy: 0 for strategy in SearchStrategy}
        self._snapshot = RouteStatistics()

    def record_strategy(self, strategy: SearchStrategy) -> RouteStatistics:
        """Increment the strategy's counter and recompute all ratios atomically."""
        with self._lock:
            self._counts[strategy] += 1
            total = sum(self._counts.values())
            self._snapshot = RouteStatistics(
                traditional_count=self._counts[SearchStrategy.HYBRID_TRADITIONAL],
                graph_rag_count=self._counts[SearchStrategy.GRAPH_RAG],
                combined_count=self._counts[SearchStrategy.COMBINED],
                total_queries=total,
                ratios=MappingProxyType({s.value: self._counts[s] / total for s in SearchStrategy})
            )
            return self._snapshot

    def snapshot(self) -> RouteStatistics:
        return self._snapshot


class RoutingError(RuntimeError):
    """Raised when both the selected strategy and the hybrid fallback fail."""

    def __init__(self, message: str, analysis: Optional[QueryAnalysis] = None):
        super().__init__(message)
        self.analysis = analysis


class IntelligentQueryRouter:
    """Analyzes each query and routes it to the retrieval strategy that fits it."""

    def __init__(self, config: Dict[str, Any], traditional_retrieval, graph_rag_retrieval):
        self.config = config
        self.traditional_retrieval = traditional_retrieval
        self.graph_rag_retrieval = graph_rag_retrieval

        self.graph_threshold = config.get("graph_threshold", 0.5)
        self.combined_threshold = config.get("combined_threshold", 0.3)
        self.graph_confidence = config.get("graph_confidence", 0.8)
        self.combined_confidence = config.get("combined_confidence", 0.7)
        self.traditional_confidence = config.get("traditional_confidence", 0.6)
        self.dispatch_timeout = config.get("dispatch_timeout", 60.0)

        self.complexity_keywords = config.get("complexity_keywords") or DEFAULT_COMPLEXITY_KEYWORDS
        self.relation_keywords = config.get("relation_keywords") or DEFAULT_RELATION_KEYWORDS

        self.statistics = RouteStatisticsTracker()
        self._strategies: Dict[SearchStrategy, Callable[[str, int], Awaitable[List[Document]]]] = {
            SearchStrategy.HYBRID_TRADITIONAL: self._traditional_search,
            SearchStrategy.GRAPH_RAG: self._graph_search,
            SearchStrategy.COMBINED: self._combined_search,
        }

    @staticmethod
    def _keyword_score(query: str, keywords: List[str]) -> float:
        if not keywords:
            return 0.0
        hits = sum(1 for keyword in keywords if keyword in query)
        return hits / len(keywords)

    def analyze_query(self, query: str) -> QueryAnalysis:
        """Rule-based analysis of complexity, relationship intensity and entity count."""
        complexity = self._keyword_score(query, self.complexity_keywords)
        relation_intensity = self._keyword_score(query, self.relation_keywords)
        entity_count = len(query.split())
        reasoning_required = complexity > self.combined_threshold or relation_intensity > self.combined_threshold

        if complexity > self.graph_threshold or relation_intensity > self.graph_threshold:
            strategy = SearchStrategy.GRAPH_RAG
            confidence = self.graph_confidence
            reasoning = (
                f"复杂度({complexity:.2f})或关系密集度({relation_intensity:.2f})较高，"
                f"使用图RAG进行结构化推理"
            )
        elif reasoning_required:
            strategy = SearchStrategy.COMBINED
            confidence = self.combined_confidence
            reasoning = (
                f"复杂度({complexity:.2f})与关系密集度({relation_intensity:.2f})中等，"
                f"结合传统检索与图RAG"
            )
        else:
            strategy = SearchStrategy.HYBRID_TRADITIONAL
            confidence = self.traditional_confidence
            reasoning = (
                f"复杂度({complexity:.2f})与关系密集度({relation_intensity:.2f})较低，"
                f"使用传统混合检索"
            )

        return QueryAnalysis(
            query_complexity=complexity,
            relationship_intensity=relation_intensity,
            reasoning_required=reasoning_required,
            entity_count=entity_count,
            recommended_strategy=strategy,
            confidence=confidence,
            reasoning=reasoning
        )

    async def _traditional_search(self, query: str, top_k: int) -> List[Document]:
        return await self.traditional_retrieval.hybrid_search(query, top_k)

    async def _graph_search(self, query: str, top_k: int) -> List[Document]:
        return await self.graph_rag_retrieval.search(query, top_k)

    async def _combined_search(self, query: str, top_k: int) -> List[Document]:
        """
        Run both retrievals on split budgets and merge them round-robin, graph first.

        Only fails when both sides fail.
        """
        traditional_k = max(1, top_k // 2)
        graph_k = top_k - traditional_k

        graph_docs, traditional_docs = await asyncio.gather(
            self.graph_rag_retrieval.search(query, graph_k),
            self.traditional_retrieval.hybrid_search(query, traditional_k),
            return_exceptions=True
        )
        for outcome in (graph_docs, traditional_docs):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        if isinstance(graph_docs, Exception) and isinstance(traditional_docs, Exception):
            raise traditional_docs
        if isinstance(graph_docs, Exception):
            logger.error(f"Graph retrieval failed in combined search: {graph_docs}")
            graph_docs = []
        if isinstance(traditional_docs, Exception):
            logger.error(f"Traditional retrieval failed in combined search: {traditional_docs}")
            traditional_docs = []

        sources = ("graph_rag", "traditional")
        return [
            doc.annotated({AnnotationKey.SEARCH_SOURCE: sources[stream]})
            for doc, stream in round_robin_merge(graph_docs, traditional_docs, top_k)
        ]

    async def _dispatch(self, strategy: SearchStrategy, query: str, top_k: int,
                        timeout: float) -> List[Document]:
        handler = self._strategies.get(strategy, self._traditional_search)
        return await asyncio.wait_for(handler(query, top_k), timeout=timeout)

    async def route_query(self, query: str, top_k: int = 5,
                          timeout: Optional[float] = None) -> Tuple[List[Document], QueryAnalysis]:
        """
        Analyze, dispatch and annotate a query.

        Args:
            timeout: per-dispatch deadline in seconds; defaults to the configured dispatch_timeout.

        Returns:
            (documents, analysis); an empty document list means no relevant knowledge.

        Raises:
            RoutingError: if the selected strategy and the hybrid fallback both fail.
        """
        state = RouteState.ANALYZING
        logger.info(f"Routing query: {query}")
        analysis = self.analyze_query(query)
        strategy = analysis.recommended_strategy
        logger.info(f"Strategy {strategy.value} (confidence {analysis.confidence:.2f}): {analysis.reasoning}")

        self.statistics.record_strategy(strategy)
        if timeout is None:
            timeout = self.dispatch_timeout

        state = RouteState.DISPATCHING
        try:
            documents = await self._dispatch(strategy, query, top_k, timeout)
        except Exception as e:
            logger.warning(f"{strategy.value} retrieval failed in state {state.value}: {e!r}, falling back to hybrid")
            try:
                documents = await self._dispatch(SearchStrategy.HYBRID_TRADITIONAL, query, top_k, timeout)
            except Exception as fallback_error:
                logger.error(f"Hybrid fallback failed: {fallback_error!r}")
                raise RoutingError(f"Retrieval failed for query: {fallback_error}", analysis) from fallback_error

        state = RouteState.MERGING
        route_annotations = {
            AnnotationKey.ROUTE_STRATEGY: strategy.value,
            AnnotationKey.QUERY_COMPLEXITY: analysis.query_complexity,
            AnnotationKey.ROUTE_CONFIDENCE: analysis.confidence,
        }
        documents = [doc.annotated(route_annotations) for doc in documents[:max(top_k, 0)]]

        state = RouteState.DONE
        logger.info(f"Route {state.value}: {len(documents)} documents via {strategy.value}")
        return documents, analysis

    def get_statistics(self) -> RouteStatistics:
        return self.statistics.snapshot()

    def explain_routing_decision(self, query: str) -> str:
        """Human-readable report of how a query would be routed."""
        analysis = self.analyze_query(query)

        def level(score: float, labels: Tuple[str, str, str]) -> str:
            if score < 0.4:
                return labels[0]
            if score < 0.8:
                return labels[1]
            return labels[2]

        complexity = level(analysis.query_complexity, ("简单", "中等", "复杂"))
        relation = level(analysis.relationship_intensity, ("单一实体", "实体关系", "复杂关系网络"))
        reasoning_required = "是" if analysis.reasoning_required else "否"

        return "\n".join([
            f"查询: {query}",
            "",
            "查询分析:",
            f"- 复杂度: {analysis.query_complexity:.2f} ({complexity})",
            f"- 关系密集度: {analysis.relationship_intensity:.2f} ({relation})",
            f"- 需要推理: {reasoning_required}",
            f"- 实体数量: {analysis.entity_count}",
            "",
            f"推荐策略: {analysis.recommended_strategy.value}",
            f"置信度: {analysis.confidence:.2f}",
            f"理由: {analysis.reasoning}",
        ])

    def get_routing_stats(self) -> Dict[str, Any]:
        """Get routing statistics and configuration."""
        return {
            "statistics": self.get_statistics().to_dict(),
            "thresholds": {
                "graph": self.graph_threshold,
                "combined": self.combined_threshold,
            },
            "confidences": {
                "graph_rag": self.graph_confidence,
                "combined": self.combined_confidence,
                "hybrid_traditional": self.traditional_confidence,
            },
            "keywords": {
                "complexity": self.complexity_keywords,
                "relation": self.relation_keywords,
            }
        }
