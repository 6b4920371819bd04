#!/usr/bin/env python3
"""
Cooking Knowledge Retrieval System - Graph RAG / Hybrid retrieval router
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.panel import Panel

from cooking_rag.models.llm_manager import LLMManager
from cooking_rag.kg.neo4j_client import Neo4jGraphClient
from cooking_rag.kg.graph_index import GraphIndex
from cooking_rag.kg.graph_rag import GraphRAGRetrieval
from cooking_rag.rag.hybrid_retrieval import HybridRetrievalModule
from cooking_rag.rag.models import AnnotationKey
from cooking_rag.rag.vector_store import PineconeVectorStore
from cooking_rag.router.intent_classifier import GraphQueryClassifier
from cooking_rag.router.query_router import IntelligentQueryRouter, RoutingError

logger = logging.getLogger(__name__)


def load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = Path(".env")
    if env_file.exists():
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())


def load_config(config_path: str = "config/config.yaml") -> dict:
    """Load configuration from YAML file."""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
        return config
    except FileNotFoundError:
        print(f"❌ Configuration file not found: {config_path}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"❌ Error parsing configuration file: {e}")
        sys.exit(1)


def setup_logging(config: dict):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    log_level = getattr(logging, log_config.get("level", "INFO"))
    log_format = log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    log_file = log_config.get("file", "logs/cooking_rag.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler()
        ]
    )


class CookingQuerySystem:
    """Main cooking retrieval system class."""

    def __init__(self, config: dict):
        self.config = config
        self.console = Console()
        retrieval_config = config.get("retrieval", {})
        graph_config = config.get("graph_rag", {})

        try:
            self.llm_manager = LLMManager(config)
        except Exception as e:
            logger.warning(f"LLM unavailable, using rule-based fallbacks: {e}")
            self.llm_manager = None

        self.graph_client = Neo4jGraphClient(config.get("neo4j", {}))

        try:
            self.vector_store = PineconeVectorStore(config.get("vector_store", {}))
        except Exception as e:
            logger.warning(f"Failed to initialize Pinecone vector store: {e}")
            self.vector_store = None

        self.index = GraphIndex(retrieval_config, self.llm_manager)
        self.hybrid = HybridRetrievalModule(
            retrieval_config, self.graph_client, self.index, self.vector_store, self.llm_manager
        )
        self.classifier = GraphQueryClassifier(graph_config, self.llm_manager)
        self.graph_rag = GraphRAGRetrieval(graph_config, self.graph_client, self.classifier)
        self.router = IntelligentQueryRouter(config.get("router", {}), self.hybrid, self.graph_rag)

        self.top_k = retrieval_config.get("top_k", 5)
        self.debug_mode = config.get("debug", {}).get("enabled", False)

    async def initialize(self):
        """Connect to the graph store and build the keyword index."""
        await self.graph_client.connect()
        stats = await self.hybrid.initialize()
        logger.info(f"System ready: {stats.get('total_entities', 0)} indexed entities")

    async def close(self):
        await self.graph_client.close()

    async def query(self, user_query: str, top_k: Optional[int] = None) -> dict:
        """
        Route a user query and collect the ranked documents.

        Returns:
            Dictionary with documents and the routing analysis, or an error message
        """
        if top_k is None:
            top_k = self.top_k

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console
        ) as progress:
            task = progress.add_task("Routing query...", total=None)
            try:
                documents, analysis = await self.router.route_query(user_query, top_k)
            except RoutingError as e:
                progress.update(task, description="Retrieval failed")
                return {"query": user_query, "documents": [], "analysis": e.analysis, "error": str(e)}
            progress.update(task, description=f"Routed to {analysis.recommended_strategy.value}")

        return {"query": user_query, "documents": documents, "analysis": analysis, "error": None}

    def display_result(self, response: dict, debug: bool = False):
        """Display routing analysis and retrieved documents."""
        analysis = response["analysis"]

        if analysis is not None:
            routing_table = Table(title="Query Routing Information")
            routing_table.add_column("Property", style="cyan")
            routing_table.add_column("Value", style="white")

            routing_table.add_row("Strategy", analysis.recommended_strategy.value)
            routing_table.add_row("Confidence", f"{analysis.confidence:.2f}")
            routing_table.add_row("Complexity", f"{analysis.query_complexity:.2f}")
            routing_table.add_row("Relationship Intensity", f"{analysis.relationship_intensity:.2f}")
            routing_table.add_row("Reasoning", analysis.reasoning)
            self.console.print(routing_table)

        if response.get("error"):
            self.console.print(Panel(
                f"检索失败，请稍后重试。\n{response['error']}",
                title="[bold red]Retrieval Failed[/bold red]",
                border_style="red"
            ))
            return

        documents = response["documents"]
        if not documents:
            self.console.print(Panel("未找到相关知识。", title="[bold yellow]No Results[/bold yellow]", border_style="yellow"))
            return

        doc_table = Table(title=f"Retrieved Documents ({len(documents)})")
        doc_table.add_column("#", style="dim")
        doc_table.add_column("Recipe", style="cyan")
        doc_table.add_column("Level", style="magenta")
        doc_table.add_column("Method", style="blue")
        doc_table.add_column("Score", style="green")
        doc_table.add_column("Content", style="white")

        for i, doc in enumerate(documents, 1):
            score = doc.get(AnnotationKey.FINAL_SCORE, doc.relevance_score)
            method = doc.get(AnnotationKey.SEARCH_METHOD) or doc.get(AnnotationKey.SEARCH_SOURCE) or doc.get(AnnotationKey.SEARCH_TYPE, "")
            doc_table.add_row(
                str(i),
                str(doc.get(AnnotationKey.RECIPE_NAME, "")),
                str(doc.retrieval_level or ""),
                str(method),
                f"{float(score):.3f}",
                doc.content if debug else doc.content[:120]
            )
        self.console.print(doc_table)

        if debug:
            for doc in documents:
                self.console.print(f"[dim]{doc.id}: {doc.annotations}[/dim]")

    async def show_stats(self):
        """Display system statistics."""
        route_stats = self.router.get_statistics()
        index_stats = self.index.get_statistics()
        graph_stats = await self.graph_client.get_stats()

        route_table = Table(title="Routing Statistics")
        route_table.add_column("Metric", style="cyan")
        route_table.add_column("Value", style="white")
        route_table.add_row("Total Queries", str(route_stats.total_queries))
        route_table.add_row("Hybrid Traditional", f"{route_stats.traditional_count} ({route_stats.ratios['hybrid_traditional']:.1%})")
        route_table.add_row("Graph RAG", f"{route_stats.graph_rag_count} ({route_stats.ratios['graph_rag']:.1%})")
        route_table.add_row("Combined", f"{route_stats.combined_count} ({route_stats.ratios['combined']:.1%})")

        index_table = Table(title="Graph Index Statistics")
        index_table.add_column("Metric", style="cyan")
        index_table.add_column("Value", style="white")
        index_table.add_row("Entities", str(index_stats["total_entities"]))
        index_table.add_row("Relations", str(index_stats["total_relations"]))
        index_table.add_row("Entity Keys", str(index_stats["total_entity_keys"]))
        index_table.add_row("Relation Keys", str(index_stats["total_relation_keys"]))
        for entity_type, count in sorted(index_stats["entity_types"].items()):
            index_table.add_row(f"  {entity_type}", str(count))

        graph_table = Table(title="Neo4j Statistics")
        graph_table.add_column("Metric", style="cyan")
        graph_table.add_column("Value", style="white")
        graph_table.add_row("Connected", "✅ Yes" if graph_stats.get("connected") else "❌ No")
        if "node_count" in graph_stats:
            graph_table.add_row("Nodes", str(graph_stats["node_count"]))
            graph_table.add_row("Relationships", str(graph_stats["relationship_count"]))
        if "error" in graph_stats:
            graph_table.add_row("Status", f"Error: {graph_stats['error']}")

        vector_table = Table(title="Vector Store Statistics")
        vector_table.add_column("Metric", style="cyan")
        vector_table.add_column("Value", style="white")
        if self.vector_store is None:
            vector_table.add_row("Status", "Unavailable")
        else:
            vector_stats = self.vector_store.get_stats()
            if "error" in vector_stats:
                vector_table.add_row("Status", f"Error: {vector_stats['error']}")
            else:
                vector_table.add_row("Index Name", vector_stats["index_name"])
                vector_table.add_row("Total Vectors", str(vector_stats["total_vector_count"]))
                vector_table.add_row("Dimension", str(vector_stats["dimension"]))

        self.console.print(route_table)
        self.console.print(index_table)
        self.console.print(graph_table)
        self.console.print(vector_table)

    async def interactive_mode(self):
        """Run the system in interactive mode."""
        self.console.print(Panel(
            "[bold blue]Cooking Knowledge Retrieval System[/bold blue]\n"
            "Ask questions about dishes, ingredients and cooking techniques!\n"
            "Type 'quit' to exit, 'stats' for statistics, 'explain <query>' for routing analysis.",
            border_style="blue"
        ))

        while True:
            try:
                query = click.prompt("\nQuery")

                if query.lower() in ['quit', 'exit', 'q']:
                    break
                elif query.lower() == 'stats':
                    await self.show_stats()
                    continue
                elif query.lower().startswith('explain '):
                    self.console.print(self.router.explain_routing_decision(query[len('explain '):].strip()))
                    continue
                elif not query.strip():
                    continue

                response = await self.query(query)
                self.display_result(response, debug=self.debug_mode)

            except (KeyboardInterrupt, click.Abort):
                self.console.print("\n[yellow]Exiting...[/yellow]")
                break


def run_with_system(config: dict, action):
    """Initialize the system, run an async action against it, and close it."""
    async def runner():
        system = CookingQuerySystem(config)
        await system.initialize()
        try:
            await action(system)
        finally:
            await system.close()

    asyncio.run(runner())


@click.group()
@click.option('--config', '-c', default='config/config.yaml', help='Configuration file path')
@click.option('--debug', '-d', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """Cooking Knowledge Retrieval System CLI."""
    load_env_file()

    ctx.ensure_object(dict)
    ctx.obj['config'] = load_config(config)
    ctx.obj['debug'] = debug

    setup_logging(ctx.obj['config'])

    if debug:
        ctx.obj['config'].setdefault('debug', {})['enabled'] = True


@cli.command()
@click.argument('query')
@click.option('--top-k', '-k', default=None, type=int, help='Number of documents to return')
@click.pass_context
def query(ctx, query, top_k):
    """Route a query and show the retrieved documents."""
    async def action(system):
        response = await system.query(query, top_k=top_k)
        system.display_result(response, debug=ctx.obj['debug'])

    run_with_system(ctx.obj['config'], action)


@cli.command()
@click.pass_context
def interactive(ctx):
    """Start an interactive query session."""
    async def action(system):
        await system.interactive_mode()

    run_with_system(ctx.obj['config'], action)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show routing, index and store statistics."""
    async def action(system):
        await system.show_stats()

    run_with_system(ctx.obj['config'], action)


@cli.command()
@click.argument('query')
@click.pass_context
def explain(ctx, query):
    """Explain how a query would be routed without running retrieval."""
    router = IntelligentQueryRouter(ctx.obj['config'].get("router", {}), None, None)
    Console().print(Panel(
        router.explain_routing_decision(query),
        title="[bold blue]Routing Decision[/bold blue]",
        border_style="blue"
    ))


@cli.command()
@click.argument('path', type=click.Path(dir_okay=False))
@click.pass_context
def export_index(ctx, path):
    """Build the keyword index from Neo4j and export it to a JSON file."""
    async def action(system):
        system.index.export_to_json(Path(path))
        system.console.print(f"[green]✅ Graph index exported to {path}[/green]")

    run_with_system(ctx.obj['config'], action)


if __name__ == "__main__":
    cli()
