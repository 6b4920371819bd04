"""
Query routing logic for the cooking retrieval system.
"""

from .query_router import IntelligentQueryRouter, QueryAnalysis, RouteStatistics, RoutingError, SearchStrategy
from .intent_classifier import GraphQueryClassifier

__all__ = [
    "IntelligentQueryRouter", "QueryAnalysis", "RouteStatistics", "RoutingError",
    "SearchStrategy", "GraphQueryClassifier",
]
