"""
Keyword index over graph entities and relationships.

Entities are indexed by name; relationships by their type plus topic keys
derived from the relation type. All mappings live in one immutable snapshot
that is replaced wholesale on every bulk change, so readers never lock.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from ..models.llm_manager import QueryLLM, parse_json_response
from ..models.prompts import RELATION_KEYS_PROMPT
from .models import EntityKeyValue, GraphNode, GraphRelation, RelationKeyValue

logger = logging.getLogger(__name__)

ENTITY_FIELDS = {
    "Recipe": ("菜品名称", [
        ("description", "描述"), ("category", "分类"), ("cuisineType", "菜系"),
        ("difficulty", "难度"), ("cookingTime", "制作时间"),
    ]),
    "Ingredient": ("食材名称", [
        ("category", "类别"), ("nutrition", "营养信息"), ("storage", "储存方式"),
    ]),
    "CookingStep": ("烹饪步骤", [
        ("description", "步骤描述"), ("order", "步骤顺序"), ("technique", "技巧"), ("time", "时间"),
    ]),
}
GENERIC_FIELDS = ("名称", [("category", "分类"), ("description", "描述")])
NAME_PREFIX = {"Recipe": "菜谱", "Ingredient": "食材", "CookingStep": "步骤"}


@dataclass(frozen=True)
class _IndexSnapshot:
    entities: Dict[str, EntityKeyValue]
    relations: Dict[str, RelationKeyValue]
    key_to_entities: Dict[str, Tuple[str, ...]]
    key_to_relations: Dict[str, Tuple[str, ...]]


def _unique(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _key_map(items: Dict[str, Any]) -> Dict[str, Tuple[str, ...]]:
    mapping: Dict[str, List[str]] = {}
    for item_id, item in items.items():
        for key in item.index_keys:
            mapping.setdefault(key, []).append(item_id)
    return {key: tuple(ids) for key, ids in mapping.items()}


class GraphIndex:
    """Key to entity/relation index built from graph data."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, llm: Optional[QueryLLM] = None):
        self.config = config or {}
        self.llm = llm
        self.base_relevance = self.config.get("entity_base_score", 0.8)
        self.enable_llm_relation_keys = self.config.get("enable_llm_relation_keys", False)
        self.llm_key_concurrency = self.config.get("llm_key_concurrency", 4)

        self._lock = threading.RLock()
        self._snapshot = _IndexSnapshot({}, {}, {}, {})

    # Construction

    def create_entity(self, node: GraphNode) -> EntityKeyValue:
        """Index entry for a graph node, with type-specific content lines."""
        entity_type = node.node_type
        props = node.properties
        if entity_type == "CookingStep":
            name = f"步骤_{node.node_id}"
        else:
            name = node.name or f"{NAME_PREFIX.get(entity_type, '实体')}_{node.node_id}"

        title, fields = ENTITY_FIELDS.get(entity_type, GENERIC_FIELDS)
        lines = [f"{title}: {name}"]
        lines.extend(f"{label}: {props[key]}" for key, label in fields if props.get(key) not in (None, ""))

        return EntityKeyValue(
            entity_id=node.node_id,
            entity_name=name,
            entity_type=entity_type,
            content="\n".join(lines),
            base_relevance=self.base_relevance,
            index_keys=[name],
            metadata={
                "name": node.name or name,
                "category": props.get("category", ""),
                "labels": list(node.labels),
                "degree": node.degree,
            }
        )

    @staticmethod
    def relation_keys(relation_type: str, source: EntityKeyValue, target: EntityKeyValue) -> List[str]:
        """Topic keys for a relationship, starting with its type."""
        keys = [relation_type]
        if relation_type == "REQUIRES":
            keys += ["食材搭配", "烹饪原料", f"{source.entity_name}_食材", target.entity_name]
        elif relation_type == "HAS_STEP":
            keys += ["制作步骤", "烹饪过程", f"{source.entity_name}_步骤", "制作方法"]
        elif relation_type == "BELONGS_TO_CATEGORY":
            keys += ["菜品分类", "美食类别", target.entity_name]
        return keys

    def create_relation(
        self,
        index: int,
        rel: GraphRelation,
        entities: Dict[str, EntityKeyValue]
    ) -> Optional[RelationKeyValue]:
        source = entities.get(rel.source_id)
        target = entities.get(rel.target_id)
        if source is None or target is None:
            return None

        return RelationKeyValue(
            relation_id=f"rel_{index}_{rel.source_id}_{rel.target_id}",
            relation_type=rel.relation_type,
            source_entity=rel.source_id,
            target_entity=rel.target_id,
            content="\n".join([
                f"关系类型: {rel.relation_type}",
                f"源实体: {source.entity_name} ({source.entity_type})",
                f"目标实体: {target.entity_name} ({target.entity_type})",
            ]),
            index_keys=_unique(self.relation_keys(rel.relation_type, source, target)),
            metadata={"source_name": source.entity_name, "target_name": target.entity_name}
        )

    async def _llm_relation_keys(self, relation: RelationKeyValue, semaphore: asyncio.Semaphore) -> List[str]:
        prompt = RELATION_KEYS_PROMPT.format(
            relation_type=relation.relation_type,
            source=relation.metadata.get("source_name", relation.source_entity),
            target=relation.metadata.get("target_name", relation.target_entity)
        )
        async with semaphore:
            try:
                data = parse_json_response(await self.llm.generate(prompt, temperature=0.3, max_tokens=200))
            except Exception as e:
                logger.debug(f"LLM relation keys failed for {relation.relation_id}: {e}")
                return []
        keys = data.get("keys", [])
        return [str(k).strip() for k in keys if isinstance(k, str) and k.strip()] if isinstance(keys, list) else []

    async def build(self, nodes: List[GraphNode], relations: List[GraphRelation]) -> Dict[str, Any]:
        """Build the index from scratch and swap it in; returns statistics."""
        entities: Dict[str, EntityKeyValue] = {}
        for node in nodes:
            if node.node_id:
                entities[node.node_id] = self.create_entity(node)

        relation_kvs: Dict[str, RelationKeyValue] = {}
        for i, rel in enumerate(relations):
            relation = self.create_relation(i, rel, entities)
            if relation is not None:
                relation_kvs[relation.relation_id] = relation

        if self.enable_llm_relation_keys and self.llm is not None and relation_kvs:
            semaphore = asyncio.Semaphore(self.llm_key_concurrency)
            ordered = list(relation_kvs.values())
            extra_keys = await asyncio.gather(*(self._llm_relation_keys(r, semaphore) for r in ordered))
            for relation, keys in zip(ordered, extra_keys):
                if keys:
                    relation_kvs[relation.relation_id] = replace(
                        relation, index_keys=_unique(relation.index_keys + keys)
                    )

        self._swap(entities, relation_kvs)
        stats = self.get_statistics()
        logger.info(f"Graph index built: {stats['total_entities']} entities, {stats['total_relations']} relations")
        return stats

    def _swap(self, entities: Dict[str, EntityKeyValue], relations: Dict[str, RelationKeyValue]):
        snapshot = _IndexSnapshot(
            entities=dict(entities),
            relations=dict(relations),
            key_to_entities=_key_map(entities),
            key_to_relations=_key_map(relations)
        )
        with self._lock:
            self._snapshot = snapshot

    def deduplicate(self) -> Dict[str, int]:
        """
        Merge entities sharing a name and drop relations with a repeated
        source/target/type signature, then rebuild the key mappings.
        """
        with self._lock:
            return self._deduplicate_locked(self._snapshot)

    def _deduplicate_locked(self, current: _IndexSnapshot) -> Dict[str, int]:
        by_name: Dict[str, List[str]] = {}
        for entity_id, entity in current.entities.items():
            by_name.setdefault(entity.entity_name, []).append(entity_id)

        entities: Dict[str, EntityKeyValue] = {}
        removed_entities = 0
        for entity_ids in by_name.values():
            primary = current.entities[entity_ids[0]]
            extra = [current.entities[eid].content for eid in entity_ids[1:]]
            if extra:
                primary = replace(primary, content=primary.content + "".join(f"\n\n补充信息: {c}" for c in extra))
                removed_entities += len(extra)
            entities[primary.entity_id] = primary

        relations: Dict[str, RelationKeyValue] = {}
        signatures = set()
        for relation_id, relation in current.relations.items():
            if relation.signature in signatures:
                continue
            signatures.add(relation.signature)
            relations[relation_id] = relation
        removed_relations = len(current.relations) - len(relations)

        self._swap(entities, relations)
        logger.info(f"Deduplication removed {removed_entities} entities and {removed_relations} relations")
        return {"removed_entities": removed_entities, "removed_relations": removed_relations}

    # Reads

    @property
    def entities(self) -> Dict[str, EntityKeyValue]:
        return self._snapshot.entities

    @property
    def relations(self) -> Dict[str, RelationKeyValue]:
        return self._snapshot.relations

    def get_entity(self, entity_id: str) -> Optional[EntityKeyValue]:
        return self._snapshot.entities.get(entity_id)

    def get_entities_by_key(self, key: str) -> List[EntityKeyValue]:
        snapshot = self._snapshot
        return [snapshot.entities[eid] for eid in snapshot.key_to_entities.get(key, ()) if eid in snapshot.entities]

    def get_relations_by_key(self, key: str) -> List[RelationKeyValue]:
        snapshot = self._snapshot
        return [snapshot.relations[rid] for rid in snapshot.key_to_relations.get(key, ()) if rid in snapshot.relations]

    def search_by_keyword(self, keyword: str) -> Tuple[List[EntityKeyValue], List[RelationKeyValue]]:
        """Exact key hits first, then keys containing the keyword (case-insensitive)."""
        snapshot = self._snapshot
        needle = keyword.lower()

        entity_ids = list(snapshot.key_to_entities.get(keyword, ()))
        for key, ids in snapshot.key_to_entities.items():
            if key != keyword and needle in key.lower():
                entity_ids.extend(ids)

        relation_ids = list(snapshot.key_to_relations.get(keyword, ()))
        for key, ids in snapshot.key_to_relations.items():
            if key != keyword and needle in key.lower():
                relation_ids.extend(ids)

        entities = [snapshot.entities[eid] for eid in _unique(entity_ids) if eid in snapshot.entities]
        relations = [snapshot.relations[rid] for rid in _unique(relation_ids) if rid in snapshot.relations]
        return entities, relations

    def get_statistics(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        entity_types: Dict[str, int] = {}
        for entity in snapshot.entities.values():
            entity_types[entity.entity_type] = entity_types.get(entity.entity_type, 0) + 1

        return {
            "total_entities": len(snapshot.entities),
            "total_relations": len(snapshot.relations),
            "total_entity_keys": sum(len(e.index_keys) for e in snapshot.entities.values()),
            "total_relation_keys": sum(len(r.index_keys) for r in snapshot.relations.values()),
            "entity_types": entity_types,
        }

    # Persistence

    def export_to_dict(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        return {
            "entities": [entity.to_dict() for entity in snapshot.entities.values()],
            "relations": [relation.to_dict() for relation in snapshot.relations.values()],
        }

    def import_from_dict(self, data: Dict[str, Any]):
        """Replace the index with previously exported data."""
        entities = {}
        for item in data.get("entities", []):
            entity = EntityKeyValue.from_dict(item)
            entities[entity.entity_id] = entity

        relations = {}
        for item in data.get("relations", []):
            relation = RelationKeyValue.from_dict(item)
            relations[relation.relation_id] = relation

        self._swap(entities, relations)
        logger.info(f"Imported {len(entities)} entities and {len(relations)} relations")

    def export_to_json(self, path: Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.export_to_dict(), f, ensure_ascii=False, indent=2)
        logger.info(f"Graph index exported to {path}")

    def import_from_json(self, path: Path):
        with open(Path(path), 'r', encoding='utf-8') as f:
            self.import_from_dict(json.load(f))
