"""Two-pass taxonomy feed importer.

Pass 1 upserts skills keyed by canonical key (no synonyms/relations).
Pass 2 uses the resulting id map to create synonyms, resolve parent
references and create COMMONLY_WITH relations. Unresolved parents/targets
are skipped, never fatal; a failing row is rolled back, logged and counted.

Feed: CSV with JSON-encoded array columns (synonyms, related_skills), or a
.json file holding an array of objects with the same keys.
"""

import csv
import json
import logging
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from hierarchy import would_create_cycle
from models import SkillRelation, SkillSynonym, SkillTaxonomy
from normalizer import normalize_text

logger = logging.getLogger(__name__)

DEFAULT_RELATION_TYPE = 'COMMONLY_WITH'
DEFAULT_RELATION_STRENGTH = 0.5
SYNONYM_SOURCE = 'CSV_IMPORT'
PROGRESS_EVERY = 500


# ---------------------------------------------------------------------------
# Feed record schema
# ---------------------------------------------------------------------------

class FeedRow(BaseModel):
    """One validated feed record. Malformed shapes are rejected here, not in merge."""
    model_config = ConfigDict(str_strip_whitespace=True, extra='ignore')

    skill_name: str = ''
    normalized_name: Optional[str] = None
    skill_type: str = 'TECHNICAL'
    category: Optional[str] = None
    subcategory: Optional[str] = None
    parent_skill: Optional[str] = None
    synonyms: List[str] = []
    related_skills: List[str] = []
    base_weight: float = 0.5
    demand_score: float = 0.5
    trending_score: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('synonyms', 'related_skills', mode='before')
    @classmethod
    def _parse_json_array(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if not value.strip():
                return []
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f'not a JSON array ({e.msg})')
        if not isinstance(value, list):
            raise ValueError('must be an array of strings')
        return value

    @field_validator('base_weight', 'demand_score', 'trending_score', mode='before')
    @classmethod
    def _blank_number(cls, value, info):
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator('normalized_name', 'category', 'subcategory', 'parent_skill',
                     'created_at', 'updated_at', mode='before')
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator('skill_type', mode='before')
    @classmethod
    def _skill_type(cls, value):
        if not value or not str(value).strip():
            return 'TECHNICAL'
        return str(value).strip().upper()

    @model_validator(mode='after')
    def _require_name(self):
        if not self.canonical_key:
            raise ValueError('missing normalized_name/skill_name')
        return self

    @property
    def canonical_key(self) -> str:
        return normalize_text(self.normalized_name or self.skill_name)


def read_feed(path: str) -> Iterator[Tuple[int, dict]]:
    """Yield (record number, raw dict) from a CSV or JSON feed file."""
    if path.lower().endswith('.json'):
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f'{path}: expected a JSON array of records')
        for idx, record in enumerate(data, start=1):
            yield idx, record
        return

    with open(path, 'r', encoding='utf-8', newline='') as f:
        for idx, record in enumerate(csv.DictReader(f), start=1):
            yield idx, record


# ---------------------------------------------------------------------------
# Import pipeline
# ---------------------------------------------------------------------------

class ImportPipeline:

    def __init__(self, store):
        self.store = store

    def validate(self, records, stats: dict) -> List[Tuple[int, FeedRow]]:
        rows = []
        for idx, raw in records:
            stats['rows'] += 1
            if not isinstance(raw, dict):
                logger.warning('Rejecting row %d: not an object', idx)
                stats['rejected'] += 1
                continue
            try:
                rows.append((idx, FeedRow.model_validate(raw)))
            except ValidationError as e:
                logger.warning('Rejecting row %d: %s', idx,
                               '; '.join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                                         for err in e.errors()))
                stats['rejected'] += 1
        return rows

    def run(self, path: str) -> dict:
        stats = {
            'rows': 0,
            'rejected': 0,
            'upserted': 0,
            'synonyms_created': 0,
            'synonyms_skipped': 0,
            'parents_set': 0,
            'parents_unresolved': 0,
            'parents_cyclic': 0,
            'relations_created': 0,
            'relations_skipped': 0,
            'relations_unresolved': 0,
            'errors': 0,
        }
        rows = self.validate(read_feed(path), stats)
        logger.info('Found %d feed rows (%d rejected)', stats['rows'], stats['rejected'])

        logger.info('First pass: upserting skills (no synonyms/relations yet)...')
        id_map = self.upsert_skills(rows, stats)
        logger.info('Upsert pass complete. Upserted %d skills.', stats['upserted'])

        logger.info('Second pass: creating synonyms and relations and resolving parent links...')
        self.link_skills(rows, id_map, stats)

        logger.info('Import summary: %s', stats)
        return stats

    def upsert_skills(self, rows, stats: dict) -> Dict[str, int]:
        id_map = {}
        for idx, row in rows:
            key = row.canonical_key
            try:
                node = self.store.find_node_by_key(key)
                if node is None:
                    node = self.store.add(SkillTaxonomy(normalized_name=key))
                    node.created_at = row.created_at or datetime.utcnow()
                # Status is never taken from the feed: re-import must not revive merged skills
                node.skill_name = row.skill_name or key
                node.skill_type = row.skill_type
                node.category = row.category
                node.subcategory = row.subcategory
                node.base_weight = row.base_weight
                node.demand_score = row.demand_score
                node.trending_score = row.trending_score
                node.updated_at = row.updated_at or datetime.utcnow()
                self.store.commit()
            except Exception as e:
                logger.error("Error upserting skill '%s' (row %d): %s", key, idx, e)
                self.store.rollback()
                stats['errors'] += 1
                continue

            resolved = self.store.resolve_active(node)
            id_map[key] = resolved.id if resolved is not None else node.id
            stats['upserted'] += 1
            if stats['upserted'] % PROGRESS_EVERY == 0:
                logger.info('  • Upserted %d / %d', stats['upserted'], len(rows))
        return id_map

    def resolve(self, text: Optional[str], id_map: Dict[str, int]) -> Optional[int]:
        """Resolve a textual skill reference to an active skill id."""
        key = normalize_text(text)
        if not key:
            return None
        if key in id_map:
            return id_map[key]
        node = self.store.resolve_active(self.store.find_node_by_key(key))
        return node.id if node is not None else None

    def link_skills(self, rows, id_map: Dict[str, int], stats: dict):
        links = self.store.parent_links()
        for idx, row in rows:
            source_id = id_map.get(row.canonical_key)
            if source_id is None:
                continue
            counts = {counter: 0 for counter in stats if counter.startswith(
                ('synonyms_', 'parents_', 'relations_'))}
            new_parent = None
            try:
                self._add_synonyms(source_id, row, counts)
                new_parent = self._set_parent(source_id, row, id_map, links, counts)
                self._add_relations(source_id, row, id_map, counts)
                self.store.commit()
            except Exception as e:
                logger.warning('Failed to link skill %s (row %d): %s', row.canonical_key, idx, e)
                self.store.rollback()
                stats['errors'] += 1
                continue

            if new_parent is not None:
                links[source_id] = new_parent
            for counter, value in counts.items():
                stats[counter] += value
            if idx % PROGRESS_EVERY == 0:
                logger.info('  • Processed %d/%d rows in second pass', idx, stats['rows'])

    def _add_synonyms(self, source_id: int, row: FeedRow, counts: dict):
        for text in row.synonyms:
            form = normalize_text(text)
            if not form or self.store.find_synonym(source_id, form):
                counts['synonyms_skipped'] += 1
                continue
            self.store.add(SkillSynonym(
                skill_taxonomy_id=source_id,
                synonym=text.strip(),
                normalized_form=form,
                locale='en',
                confidence=1.0,
                source=SYNONYM_SOURCE,
            ))
            counts['synonyms_created'] += 1

    def _set_parent(self, source_id: int, row: FeedRow, id_map, links, counts) -> Optional[int]:
        if not row.parent_skill:
            return None
        parent_id = self.resolve(row.parent_skill, id_map)
        if parent_id is None:
            logger.debug('Parent %r of %s not found; skipped', row.parent_skill, row.canonical_key)
            counts['parents_unresolved'] += 1
            return None
        if links.get(source_id) == parent_id:
            return None
        if would_create_cycle(links, source_id, parent_id):
            logger.warning('Parent %r of %s would close a cycle; skipped',
                           row.parent_skill, row.canonical_key)
            counts['parents_cyclic'] += 1
            return None
        node = self.store.get_node(source_id)
        node.parent_id = parent_id
        counts['parents_set'] += 1
        return parent_id

    def _add_relations(self, source_id: int, row: FeedRow, id_map, counts: dict):
        for target in row.related_skills:
            target_id = self.resolve(target, id_map)
            if target_id is None:
                counts['relations_unresolved'] += 1
                continue
            if (target_id == source_id
                    or self.store.find_relation(source_id, target_id, DEFAULT_RELATION_TYPE)):
                counts['relations_skipped'] += 1
                continue
            self.store.add(SkillRelation(
                source_skill_id=source_id,
                target_skill_id=target_id,
                relation_type=DEFAULT_RELATION_TYPE,
                strength=DEFAULT_RELATION_STRENGTH,
                bidirectional=True,
            ))
            counts['relations_created'] += 1
