"""
Tests for the intelligent query router.
"""

import asyncio
import threading
from unittest.mock import Mock, AsyncMock

import pytest

from cooking_rag.kg.graph_rag import GraphRAGRetrieval
from cooking_rag.kg.neo4j_client import Neo4jGraphClient
from cooking_rag.rag.hybrid_retrieval import HybridRetrievalModule
from cooking_rag.rag.models import AnnotationKey, Document
from cooking_rag.router.intent_classifier import GraphQueryClassifier
from cooking_rag.router.query_router import (
    IntelligentQueryRouter, QueryAnalysis, RouteStatistics, RouteStatisticsTracker,
    RoutingError, SearchStrategy
)


def make_docs(prefix, count, score=0.9):
    return [
        Document(
            id=f"{prefix}_{i}",
            content=f"{prefix} content {i}",
            annotations={AnnotationKey.NODE_ID: f"{prefix}_node_{i}", AnnotationKey.RELEVANCE_SCORE: score}
        )
        for i in range(count)
    ]


class TestRouteStatistics:
    """Test the routing statistics counters."""

    def test_initial_snapshot(self):
        """A fresh tracker reports zero counts and zero ratios."""
        stats = RouteStatisticsTracker().snapshot()
        assert stats.total_queries == 0
        assert stats.traditional_count == 0
        assert all(ratio == 0.0 for ratio in stats.ratios.values())

    def test_ratios_sum_to_one(self):
        """Counts add up to the total and ratios are recomputed on every record."""
        tracker = RouteStatisticsTracker()
        for strategy in [SearchStrategy.GRAPH_RAG, SearchStrategy.GRAPH_RAG, SearchStrategy.COMBINED,
                         SearchStrategy.HYBRID_TRADITIONAL]:
            tracker.record_strategy(strategy)

        stats = tracker.snapshot()
        assert stats.total_queries == 4
        assert stats.traditional_count + stats.graph_rag_count + stats.combined_count == 4
        assert stats.ratios["graph_rag"] == pytest.approx(0.5)
        assert sum(stats.ratios.values()) == pytest.approx(1.0)

    def test_snapshot_is_immutable(self):
        """Snapshots are frozen copies."""
        tracker = RouteStatisticsTracker()
        stats = tracker.record_strategy(SearchStrategy.COMBINED)
        with pytest.raises(AttributeError):
            stats.total_queries = 10
        tracker.record_strategy(SearchStrategy.COMBINED)
        assert stats.total_queries == 1

    def test_concurrent_records(self):
        """Concurrent updates never lose counts."""
        tracker = RouteStatisticsTracker()

        def worker(strategy):
            for _ in range(500):
                tracker.record_strategy(strategy)

        threads = [threading.Thread(target=worker, args=(s,)) for s in SearchStrategy for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = tracker.snapshot()
        assert stats.total_queries == 3000
        assert stats.traditional_count == stats.graph_rag_count == stats.combined_count == 1000
        assert sum(stats.ratios.values()) == pytest.approx(1.0)

    def test_snapshot_ratios_are_read_only(self):
        tracker = RouteStatisticsTracker()
        tracker.record_strategy(SearchStrategy.GRAPH_RAG)
        stats = tracker.snapshot()

        with pytest.raises(TypeError):
            stats.ratios["graph_rag"] = 42.0
        with pytest.raises(TypeError):
            RouteStatistics().ratios["combined"] = 1.0

        again = tracker.snapshot()
        assert again.ratios["graph_rag"] == again.graph_rag_count / again.total_queries == 1.0

    def test_to_dict(self):
        stats = RouteStatistics(traditional_count=1, total_queries=1, ratios={
            "hybrid_traditional": 1.0, "graph_rag": 0.0, "combined": 0.0
        })
        data = stats.to_dict()
        assert data["traditional_ratio"] == 1.0
        assert data["total_queries"] == 1


class TestQueryAnalysis:
    """Test rule-based query analysis."""

    @pytest.fixture
    def router(self):
        return IntelligentQueryRouter({}, Mock(), Mock())

    def test_simple_query_uses_hybrid(self, router):
        """A query with no cues goes to hybrid retrieval."""
        analysis = router.analyze_query("宫保鸡丁怎么做")
        assert analysis.query_complexity == 0.0
        assert analysis.relationship_intensity == 0.0
        assert analysis.recommended_strategy == SearchStrategy.HYBRID_TRADITIONAL
        assert analysis.confidence == 0.6
        assert analysis.reasoning_required is False

    def test_single_relation_cue_with_default_lexicon(self, router):
        """One relation cue out of eight stays below the combined threshold."""
        analysis = router.analyze_query("鸡肉配什么蔬菜？")
        assert analysis.relationship_intensity == pytest.approx(1 / 8)
        assert analysis.recommended_strategy == SearchStrategy.HYBRID_TRADITIONAL

    def test_complex_query_uses_graph(self):
        router = IntelligentQueryRouter({"complexity_keywords": ["为什么", "原因"]}, Mock(), Mock())
        analysis = router.analyze_query("为什么红烧肉要先焯水，原因是什么")
        assert analysis.query_complexity == 1.0
        assert analysis.recommended_strategy == SearchStrategy.GRAPH_RAG
        assert analysis.confidence == 0.8
        assert analysis.reasoning_required is True

    def test_scores_are_bounded(self, router):
        analysis = router.analyze_query("为什么 如何 关系 影响 原因 比较 区别 分析 推理 配 搭配 组合 相关 联系 连接 适合 匹配")
        assert 0.0 <= analysis.query_complexity <= 1.0
        assert 0.0 <= analysis.relationship_intensity <= 1.0
        assert analysis.query_complexity == 1.0

    def test_entity_count_counts_whitespace_tokens(self, router):
        assert router.analyze_query("鸡肉 土豆 胡萝卜").entity_count == 3

    def test_explain_routing_decision(self, router):
        report = router.explain_routing_decision("宫保鸡丁怎么做")
        assert "查询: 宫保鸡丁怎么做" in report
        assert "推荐策略: hybrid_traditional" in report
        assert "简单" in report
        assert "需要推理: 否" in report

    def test_explain_does_not_touch_statistics(self, router):
        router.explain_routing_decision("鸡肉配什么蔬菜？")
        assert router.get_statistics().total_queries == 0


class TestRouteQuery:
    """Test dispatch, merging and fallback."""

    @pytest.fixture
    def traditional(self):
        retrieval = Mock(spec=HybridRetrievalModule)
        retrieval.hybrid_search = AsyncMock(return_value=make_docs("hybrid", 5))
        return retrieval

    @pytest.fixture
    def graph(self):
        retrieval = Mock(spec=GraphRAGRetrieval)
        retrieval.search = AsyncMock(return_value=make_docs("graph", 5))
        return retrieval

    @pytest.fixture
    def relation_config(self):
        return {"relation_keywords": ["配", "搭配"]}

    @pytest.mark.asyncio
    async def test_combined_round_robin(self, relation_config, traditional, graph):
        """A single relation cue against a two-word lexicon selects combined retrieval."""
        router = IntelligentQueryRouter(relation_config, traditional, graph)
        documents, analysis = await router.route_query("鸡肉配什么蔬菜？", top_k=5)

        assert analysis.relationship_intensity == pytest.approx(0.5)
        assert analysis.recommended_strategy == SearchStrategy.COMBINED
        assert analysis.confidence == 0.7

        graph.search.assert_awaited_once_with("鸡肉配什么蔬菜？", 3)
        traditional.hybrid_search.assert_awaited_once_with("鸡肉配什么蔬菜？", 2)

        assert len(documents) == 5
        assert [d.get(AnnotationKey.SEARCH_SOURCE) for d in documents] == [
            "graph_rag", "traditional", "graph_rag", "traditional", "graph_rag"
        ]
        assert all(d.get(AnnotationKey.ROUTE_STRATEGY) == "combined" for d in documents)
        assert router.get_statistics().combined_count == 1

    @pytest.mark.asyncio
    async def test_combined_skips_duplicate_origins(self, relation_config, traditional, graph):
        shared = make_docs("graph", 1)
        graph.search = AsyncMock(return_value=shared)
        traditional.hybrid_search = AsyncMock(return_value=shared + make_docs("hybrid", 1))
        router = IntelligentQueryRouter(relation_config, traditional, graph)

        documents, _ = await router.route_query("鸡肉配土豆", top_k=4)

        assert [d.origin_id for d in documents] == ["graph_node_0", "hybrid_node_0"]

    @pytest.mark.asyncio
    async def test_combined_survives_one_side_failing(self, relation_config, traditional, graph):
        graph.search = AsyncMock(side_effect=RuntimeError("graph down"))
        traditional.hybrid_search = AsyncMock(side_effect=lambda query, k: make_docs("hybrid", k))
        router = IntelligentQueryRouter(relation_config, traditional, graph)

        documents, analysis = await router.route_query("鸡肉配土豆", top_k=4)

        assert analysis.recommended_strategy == SearchStrategy.COMBINED
        traditional.hybrid_search.assert_awaited_once_with("鸡肉配土豆", 2)
        assert len(documents) == 2
        assert all(d.get(AnnotationKey.SEARCH_SOURCE) == "traditional" for d in documents)

    @pytest.mark.asyncio
    async def test_hybrid_strategy(self, traditional, graph):
        router = IntelligentQueryRouter({}, traditional, graph)
        documents, analysis = await router.route_query("宫保鸡丁怎么做", top_k=3)

        assert analysis.recommended_strategy == SearchStrategy.HYBRID_TRADITIONAL
        traditional.hybrid_search.assert_awaited_once_with("宫保鸡丁怎么做", 3)
        graph.search.assert_not_awaited()
        assert len(documents) == 3
        assert documents[0].get(AnnotationKey.ROUTE_CONFIDENCE) == 0.6

    @pytest.mark.asyncio
    async def test_graph_strategy_with_disconnected_store(self, traditional):
        """Graph retrieval over a disconnected store returns an empty list, not an error."""
        client = Neo4jGraphClient({"password": "unused"})
        classifier = GraphQueryClassifier({}, None)
        graph = GraphRAGRetrieval({}, client, classifier)
        router = IntelligentQueryRouter({"complexity_keywords": ["为什么"]}, traditional, graph)

        documents, analysis = await router.route_query("为什么要焯水", top_k=5)

        assert analysis.recommended_strategy == SearchStrategy.GRAPH_RAG
        assert documents == []
        traditional.hybrid_search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_to_hybrid(self, traditional, graph):
        graph.search = AsyncMock(side_effect=RuntimeError("boom"))
        router = IntelligentQueryRouter({"complexity_keywords": ["为什么"]}, traditional, graph)

        documents, analysis = await router.route_query("为什么要焯水", top_k=2)

        assert analysis.recommended_strategy == SearchStrategy.GRAPH_RAG
        assert len(documents) == 2
        assert documents[0].id == "hybrid_0"
        assert router.get_statistics().graph_rag_count == 1
        assert router.get_statistics().traditional_count == 0

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_routing_error(self, traditional, graph):
        graph.search = AsyncMock(side_effect=RuntimeError("graph down"))
        traditional.hybrid_search = AsyncMock(side_effect=RuntimeError("hybrid down"))
        router = IntelligentQueryRouter({"complexity_keywords": ["为什么"]}, traditional, graph)

        with pytest.raises(RoutingError) as exc_info:
            await router.route_query("为什么要焯水")

        assert isinstance(exc_info.value.analysis, QueryAnalysis)
        assert traditional.hybrid_search.await_count == 1
        assert router.get_statistics().total_queries == 1

    @pytest.mark.asyncio
    async def test_dispatch_timeout_falls_back(self, traditional, graph):
        async def slow_search(query, top_k):
            await asyncio.sleep(1)
            return make_docs("graph", 1)

        graph.search = AsyncMock(side_effect=slow_search)
        router = IntelligentQueryRouter(
            {"complexity_keywords": ["为什么"], "dispatch_timeout": 0.05}, traditional, graph
        )

        documents, _ = await router.route_query("为什么要焯水", top_k=1)

        assert [d.id for d in documents] == ["hybrid_0"]

    @pytest.mark.asyncio
    async def test_caller_timeout_overrides_config(self, traditional, graph):
        async def slow_search(query, top_k):
            await asyncio.sleep(1)
            return make_docs("graph", 1)

        graph.search = AsyncMock(side_effect=slow_search)
        router = IntelligentQueryRouter({"complexity_keywords": ["为什么"]}, traditional, graph)
        assert router.dispatch_timeout == 60.0

        documents, _ = await router.route_query("为什么要焯水", top_k=1, timeout=0.05)

        assert [d.id for d in documents] == ["hybrid_0"]
        traditional.hybrid_search.assert_awaited_once_with("为什么要焯水", 1)

    @pytest.mark.asyncio
    async def test_results_truncated_to_top_k(self, traditional, graph):
        traditional.hybrid_search = AsyncMock(return_value=make_docs("hybrid", 8))
        router = IntelligentQueryRouter({}, traditional, graph)

        documents, _ = await router.route_query("红烧肉", top_k=3)

        assert len(documents) == 3

    @pytest.mark.asyncio
    async def test_concurrent_routing_statistics(self, traditional, graph):
        router = IntelligentQueryRouter({"relation_keywords": ["配"]}, traditional, graph)
        queries = ["红烧肉"] * 10 + ["鸡肉配米饭"] * 10

        await asyncio.gather(*(router.route_query(q) for q in queries))

        stats = router.get_statistics()
        assert stats.total_queries == 20
        assert stats.traditional_count == 10
        assert stats.graph_rag_count == 10
        assert sum(stats.ratios.values()) == pytest.approx(1.0)

    def test_get_routing_stats(self, traditional, graph):
        router = IntelligentQueryRouter({}, traditional, graph)
        stats = router.get_routing_stats()
        assert stats["thresholds"] == {"graph": 0.5, "combined": 0.3}
        assert stats["statistics"]["total_queries"] == 0
