"""
Data models for the retrieval modules.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class AnnotationKey(str, Enum):
    """Closed set of document annotation keys shared by producers and consumers."""
    NODE_ID = "node_id"
    NODE_TYPE = "node_type"
    NAME = "name"
    RECIPE_NAME = "recipe_name"
    CATEGORY = "category"
    CUISINE_TYPE = "cuisine_type"
    DIFFICULTY = "difficulty"
    LABELS = "labels"
    DEGREE = "degree"
    RETRIEVAL_LEVEL = "retrieval_level"
    RELEVANCE_SCORE = "relevance_score"
    MATCHED_KEYWORD = "matched_keyword"
    SOURCE = "source"
    SEARCH_TYPE = "search_type"
    SEARCH_METHOD = "search_method"
    SEARCH_SOURCE = "search_source"
    FINAL_SCORE = "final_score"
    ROUND_ROBIN_ORDER = "round_robin_order"
    DISTANCE = "distance"
    DOC_TYPE = "doc_type"
    CHUNK_ID = "chunk_id"
    PARENT_ID = "parent_id"
    PATH_LENGTH = "path_length"
    PATH_TYPE = "path_type"
    NODE_COUNT = "node_count"
    RELATIONSHIP_COUNT = "relationship_count"
    GRAPH_DENSITY = "graph_density"
    REASONING_CHAINS = "reasoning_chains"
    ROUTE_STRATEGY = "route_strategy"
    QUERY_COMPLEXITY = "query_complexity"
    ROUTE_CONFIDENCE = "route_confidence"


KNOWN_KEYS = frozenset(key.value for key in AnnotationKey)
IDENTITY_KEYS = frozenset({AnnotationKey.NODE_ID.value, AnnotationKey.NODE_TYPE.value})

KeyLike = Union[AnnotationKey, str]


def _key(key: KeyLike) -> str:
    value = key.value if isinstance(key, AnnotationKey) else str(key)
    if value not in KNOWN_KEYS:
        raise KeyError(f"Unknown annotation key: {value}")
    return value


def filter_annotations(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only the known annotation keys of an external attribute map."""
    kept = {}
    for key, value in values.items():
        if key in KNOWN_KEYS:
            kept[key] = value
        else:
            logger.debug(f"Dropping unknown annotation key {key!r}")
    return kept


@dataclass
class Document:
    """Retrieval-agnostic unit returned to the caller."""
    id: str
    content: str
    annotations: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.annotations = {_key(k): v for k, v in self.annotations.items()}

    def get(self, key: KeyLike, default: Any = None) -> Any:
        return self.annotations.get(_key(key), default)

    @property
    def origin_id(self) -> str:
        """Graph entity this document came from, falling back to the document id."""
        return str(self.annotations.get(AnnotationKey.NODE_ID.value) or self.id)

    @property
    def relevance_score(self) -> float:
        try:
            return float(self.annotations.get(AnnotationKey.RELEVANCE_SCORE.value, 0.0))
        except (TypeError, ValueError):
            return 0.0

    @property
    def retrieval_level(self) -> Optional[str]:
        return self.annotations.get(AnnotationKey.RETRIEVAL_LEVEL.value)

    def annotated(self, values: Mapping[KeyLike, Any]) -> "Document":
        """Copy of this document with extra annotations; identity keys already set are kept."""
        annotations = dict(self.annotations)
        for key, value in values.items():
            name = _key(key)
            if name in IDENTITY_KEYS and name in annotations:
                continue
            annotations[name] = value
        return Document(id=self.id, content=self.content, annotations=annotations)


@dataclass
class RetrievalResult:
    """Single keyword-retrieval hit before conversion into a Document."""
    content: str
    node_id: str
    node_type: str
    relevance_score: float
    retrieval_level: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def round_robin_merge(
    first: List[Document],
    second: List[Document],
    top_k: int
) -> List[Tuple[Document, int]]:
    """
    Interleave two ranked lists position by position, first list leading.

    Documents whose origin id was already emitted are skipped. Returns
    (document, stream) pairs, stream 0 for ``first`` and 1 for ``second``,
    stopping at ``top_k`` unique documents.
    """
    merged: List[Tuple[Document, int]] = []
    if top_k <= 0:
        return merged

    seen = set()
    for i in range(max(len(first), len(second))):
        for stream, docs in ((0, first), (1, second)):
            if i >= len(docs):
                continue
            doc = docs[i]
            if doc.origin_id in seen:
                continue
            seen.add(doc.origin_id)
            merged.append((doc, stream))
            if len(merged) >= top_k:
                return merged

    return merged
