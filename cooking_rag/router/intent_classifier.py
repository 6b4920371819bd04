"""
Intent Classifier turning a cooking question into a structured graph query plan.
"""

import asyncio
import logging
from typing import Dict, Any, List, Optional

from ..kg.models import GraphQueryPlan, QueryType
from ..models.llm_manager import QueryLLM

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


class GraphQueryClassifier:
    """
    Classify a query into a GraphQueryPlan.

    The LLM is asked for a JSON plan. Any failure (no LLM, timeout, transport
    error, malformed or empty response) yields the default subgraph plan
    seeded with the raw query text, so ``classify`` never raises.
    """

    def __init__(self, config: Dict[str, Any], llm: Optional[QueryLLM] = None):
        self.config = config
        self.llm = llm
        self.timeout = config.get("classify_timeout", 15.0)
        self.default_max_nodes = config.get("default_max_nodes", 50)

    async def classify(self, query: str) -> GraphQueryPlan:
        if self.llm is None:
            logger.info("No LLM configured, using default graph query plan")
            return GraphQueryPlan.default_for(query)

        try:
            data = await asyncio.wait_for(self.llm.classify_graph_query(query), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Graph query classification timed out after {self.timeout}s, using default plan")
            return GraphQueryPlan.default_for(query)
        except Exception as e:
            logger.warning(f"Graph query classification failed: {e}, using default plan")
            return GraphQueryPlan.default_for(query)

        return self.plan_from_response(query, data)

    def plan_from_response(self, query: str, data: Dict[str, Any]) -> GraphQueryPlan:
        """Normalize a decoded LLM response into a plan."""
        if not isinstance(data, dict):
            logger.warning("Classification response is not an object, using default plan")
            return GraphQueryPlan.default_for(query)

        source_entities = _as_list(data.get("source_entities"))
        if not source_entities:
            source_entities = [query]

        plan = GraphQueryPlan(
            query_type=QueryType.parse(data.get("query_type")),
            source_entities=source_entities,
            target_entities=_as_list(data.get("target_entities")),
            relation_types=_as_list(data.get("relation_types")),
            max_depth=data.get("max_depth", 0),
            max_nodes=data.get("max_nodes", self.default_max_nodes),
            reasoning=str(data.get("reasoning") or "")
        )
        logger.debug(f"Classified {query!r} as {plan.query_type.value} (depth={plan.max_depth}, nodes={plan.max_nodes})")
        return plan
