"""
Hybrid retrieval combining the keyword graph index with Pinecone vector search.
"""

from .models import AnnotationKey, Document, RetrievalResult, round_robin_merge
from .hybrid_retrieval import HybridRetrievalModule
from .vector_store import PineconeVectorStore, VectorStoreError

__all__ = [
    "AnnotationKey", "Document", "RetrievalResult", "round_robin_merge",
    "HybridRetrievalModule", "PineconeVectorStore", "VectorStoreError",
]
