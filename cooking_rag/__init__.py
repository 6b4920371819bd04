"""
Cooking Knowledge Retrieval System

A retrieval decision engine for cooking questions that routes each query to
graph retrieval (Neo4j), hybrid keyword/vector retrieval (graph index + Pinecone),
or a fair merge of both.
"""

__version__ = "1.0.0"
__author__ = "Cooking RAG Team"
