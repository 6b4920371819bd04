"""
Tests for the Cooking Knowledge Retrieval System wiring, LLM manager and store adapters.
"""

import pytest
from unittest.mock import Mock, patch, AsyncMock

from cooking_rag.models.llm_manager import LLMManager, parse_json_response, resolve_env_vars
from cooking_rag.kg.neo4j_client import GraphStoreError, Neo4jGraphClient
from cooking_rag.rag.vector_store import PineconeVectorStore, VectorStoreError, build_filter
from cooking_rag.router.query_router import IntelligentQueryRouter, SearchStrategy


class TestParseJsonResponse:
    """Test LLM JSON extraction."""

    def test_plain_object(self):
        assert parse_json_response('{"query_type": "multi_hop"}') == {"query_type": "multi_hop"}

    def test_fenced_object(self):
        response = '```json\n{"entity_keywords": ["鸡肉"], "topic_keywords": []}\n```'
        assert parse_json_response(response)["entity_keywords"] == ["鸡肉"]

    def test_object_with_prose(self):
        response = '分析如下：{"query_type": "subgraph", "max_depth": 2} 以上。'
        assert parse_json_response(response)["max_depth"] == 2

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_json_response("not json at all")

    def test_empty_response(self):
        with pytest.raises(ValueError):
            parse_json_response("   ")

    def test_non_object(self):
        with pytest.raises(ValueError):
            parse_json_response("[1, 2, 3]")

    def test_resolve_env_vars(self, monkeypatch):
        monkeypatch.setenv("COOKING_TEST_VAR", "secret")
        assert resolve_env_vars("${COOKING_TEST_VAR}") == "secret"
        assert resolve_env_vars("${COOKING_UNSET_VAR}") == "${COOKING_UNSET_VAR}"


class TestLLMManager:
    """Test LLM Manager functionality."""

    @pytest.fixture
    def config(self):
        return {
            "llm": {
                "default_provider": "openai",
                "timeout": 5.0,
                "openai": {
                    "api_key": "test_key",
                    "model": "gpt-4o-mini",
                    "temperature": 0.1,
                    "max_tokens": 2048
                }
            }
        }

    @pytest.fixture
    def llm_manager(self, config):
        with patch('openai.AsyncOpenAI') as mock_openai:
            mock_openai.return_value = Mock()
            return LLMManager(config)

    def set_response(self, llm_manager, content):
        mock_response = Mock()
        mock_response.choices = [Mock()]
        mock_response.choices[0].message.content = content
        create = AsyncMock(return_value=mock_response)
        llm_manager.providers["openai"].client.chat.completions.create = create
        return create

    def test_initialization(self, llm_manager):
        """Test LLM manager initialization."""
        assert "openai" in llm_manager.providers
        assert llm_manager.get_available_providers() == ["openai"]

    def test_no_providers(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError):
            LLMManager({"llm": {"openai": {"api_key": "${COOKING_MISSING_KEY}"}}})

    @pytest.mark.asyncio
    async def test_generate(self, llm_manager):
        """Test text generation."""
        self.set_response(llm_manager, "Test response")

        result = await llm_manager.generate("Test prompt")
        assert result == "Test response"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, llm_manager):
        with pytest.raises(ValueError):
            await llm_manager.generate("Test prompt", provider="anthropic")

    @pytest.mark.asyncio
    async def test_classify_graph_query(self, llm_manager):
        create = self.set_response(
            llm_manager,
            '```json\n{"query_type": "path_finding", "source_entities": ["鸡肉"], "target_entities": ["米饭"]}\n```'
        )

        data = await llm_manager.classify_graph_query("鸡肉和米饭有什么联系")

        assert data["query_type"] == "path_finding"
        messages = create.await_args.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert "鸡肉和米饭有什么联系" in messages[1]["content"]

    @pytest.mark.asyncio
    async def test_extract_keywords(self, llm_manager):
        self.set_response(llm_manager, '{"entity_keywords": ["鸡肉", ""], "topic_keywords": ["家常菜"]}')

        assert await llm_manager.extract_keywords("鸡肉家常做法") == (["鸡肉"], ["家常菜"])

    @pytest.mark.asyncio
    async def test_extract_keywords_missing_lists(self, llm_manager):
        self.set_response(llm_manager, '{"keywords": ["鸡肉"]}')

        with pytest.raises(ValueError):
            await llm_manager.extract_keywords("鸡肉")


class TestNeo4jGraphClient:
    """Test the graph client when no database is reachable."""

    @pytest.fixture
    def client(self):
        return Neo4jGraphClient({"uri": "bolt://localhost:7687", "password": "unused"})

    def test_initial_state(self, client):
        assert client.is_connected is False
        assert client.database == "neo4j"

    @pytest.mark.asyncio
    async def test_run_read_requires_connection(self, client):
        with pytest.raises(GraphStoreError):
            await client.run_read("RETURN 1")

    @pytest.mark.asyncio
    async def test_stats_when_disconnected(self, client):
        assert await client.get_stats() == {"connected": False}

    @pytest.mark.asyncio
    async def test_neighbors_zero_limit(self, client):
        assert await client.get_node_neighbors("r1", 0) == []

    @pytest.mark.asyncio
    async def test_load_graph_data(self, client):
        recipe = {"id": "r1", "name": "红烧肉", "labels": ["Recipe"], "properties": {}, "degree": 2}
        ingredient = {"id": "i1", "name": "五花肉", "labels": ["Ingredient"], "properties": {}, "degree": 1}
        client.run_read = AsyncMock(side_effect=[
            [{"node": recipe, "category": "家常菜"}],
            [{"node": ingredient, "category": "肉类"}],
            [],
            [{"source_id": "r1", "type": "REQUIRES", "target_id": "i1", "properties": {}}],
        ])

        nodes, relations = await client.load_graph_data()

        assert [n.node_id for n in nodes] == ["r1", "i1"]
        assert nodes[0].properties["category"] == "家常菜"
        assert relations[0].relation_type == "REQUIRES"
        assert client.run_read.await_count == 4


class TestPineconeVectorStore:
    """Test vector search translation without a live index."""

    @pytest.fixture
    def store(self):
        store = PineconeVectorStore.__new__(PineconeVectorStore)
        store.config = {}
        store.index_name = "cooking-knowledge"
        store.namespace = ""
        store.timeout = 5.0
        store.embedder = Mock()
        store.embedder.aembed_query = AsyncMock(return_value=[0.1, 0.2])
        store.index = Mock()
        return store

    def test_build_filter(self):
        assert build_filter(None) is None
        assert build_filter({"category": "家常菜"}) == {"category": {"$eq": "家常菜"}}
        assert build_filter({"category": "家常菜", "difficulty": ["简单", "中等"]}) == {
            "$and": [{"category": {"$eq": "家常菜"}}, {"difficulty": {"$in": ["简单", "中等"]}}]
        }

    @pytest.mark.asyncio
    async def test_similarity_search(self, store):
        match = Mock(id="chunk_1", score=0.75, metadata={"text": "红烧肉做法", "node_id": "r1", "vector_id": 3})
        store.index.query.return_value = Mock(matches=[match])

        results = await store.similarity_search("红烧肉", top_k=3, filters={"node_type": "Recipe"})

        assert len(results) == 1
        assert results[0].distance == pytest.approx(0.25)
        assert results[0].text == "红烧肉做法"
        assert results[0].metadata == {"node_id": "r1"}
        kwargs = store.index.query.call_args.kwargs
        assert kwargs["top_k"] == 3
        assert kwargs["filter"] == {"node_type": {"$eq": "Recipe"}}

    @pytest.mark.asyncio
    async def test_similarity_search_failure(self, store):
        store.embedder.aembed_query = AsyncMock(side_effect=RuntimeError("rate limited"))

        with pytest.raises(VectorStoreError):
            await store.similarity_search("红烧肉")


class TestCookingQuerySystem:
    """Test the CLI system wiring without external services."""

    @pytest.fixture
    def config(self):
        return {
            "llm": {},
            "neo4j": {"password": "unused"},
            "vector_store": {"api_key": ""},
            "retrieval": {"top_k": 3},
            "router": {"relation_keywords": ["配", "搭配"]},
        }

    @pytest.fixture
    def system(self, config, monkeypatch):
        monkeypatch.delenv("PINECONE_API_KEY", raising=False)
        from main import CookingQuerySystem
        return CookingQuerySystem(config)

    def test_offline_components(self, system):
        assert system.llm_manager is None
        assert system.vector_store is None
        assert system.top_k == 3
        assert isinstance(system.router, IntelligentQueryRouter)

    @pytest.mark.asyncio
    async def test_query_offline(self, system):
        response = await system.query("鸡肉配什么蔬菜？")

        assert response["error"] is None
        assert response["analysis"].recommended_strategy == SearchStrategy.COMBINED
        assert response["documents"] == []
        assert system.router.get_statistics().combined_count == 1

    @pytest.mark.asyncio
    async def test_query_keeps_explicit_top_k(self, system):
        analysis = system.router.analyze_query("红烧肉")
        system.router.route_query = AsyncMock(return_value=([], analysis))

        await system.query("红烧肉", top_k=0)
        system.router.route_query.assert_awaited_with("红烧肉", 0)

        await system.query("红烧肉")
        system.router.route_query.assert_awaited_with("红烧肉", 3)


class TestCli:
    """Test the command line entry points that need no external services."""

    def test_explain_uses_router_only(self, tmp_path, monkeypatch):
        from click.testing import CliRunner
        import main

        monkeypatch.chdir(tmp_path)
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "router:\n"
            "  relation_keywords: ['配', '搭配']\n"
            "logging:\n"
            f"  file: {tmp_path / 'logs' / 'test.log'}\n",
            encoding="utf-8"
        )

        with patch.object(main, "CookingQuerySystem") as system_class:
            result = CliRunner().invoke(main.cli, ["--config", str(config_file), "explain", "鸡肉配什么蔬菜？"])

        assert result.exit_code == 0, result.output
        system_class.assert_not_called()
        assert "推荐策略: combined" in result.output
