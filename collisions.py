"""Collision detection and the canonical-key normalization pass.

Collision review file format (also the merge input):

    base_normalized,ids
    "python","12|57|301"
"""

import csv
import logging
import os
from collections import defaultdict
from datetime import datetime
from typing import Dict, List

from normalizer import (BASIS_NAME, build_key, disambiguate, is_disambiguation_of,
                        node_fingerprint, normalize_text)

logger = logging.getLogger(__name__)

COLLISIONS_FILE = os.environ.get('TAXONOMY_COLLISIONS_FILE', 'normalized-collisions.csv')
NORMALIZATION_BASIS = os.environ.get('TAXONOMY_NORMALIZATION_BASIS', BASIS_NAME)

COLLISION_HEADER = ['base_normalized', 'ids']


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def group_by_key(nodes, basis: str = BASIS_NAME) -> Dict[str, List[int]]:
    """Bucket ACTIVE nodes by their base key (all buckets, any size)."""
    buckets = defaultdict(list)
    for node in nodes:
        if not node.is_active:
            continue
        buckets[build_key(node.skill_name, node.category, basis)].append(node.id)
    return {key: sorted(ids) for key, ids in buckets.items()}


def find_collisions(nodes, basis: str = BASIS_NAME) -> Dict[str, List[int]]:
    """Return {key: sorted ids} for every key shared by more than one ACTIVE node."""
    buckets = group_by_key(nodes, basis)
    return {key: buckets[key] for key in sorted(buckets) if len(buckets[key]) > 1}


class CollisionIndex:
    """Read-only view of naming collisions over the store."""

    def __init__(self, store, basis: str = NORMALIZATION_BASIS):
        build_key('', basis=basis)  # Validate basis early
        self.store = store
        self.basis = basis

    def collisions(self) -> Dict[str, List[int]]:
        return find_collisions(self.store.nodes(active_only=True), self.basis)


# ---------------------------------------------------------------------------
# Review file
# ---------------------------------------------------------------------------

def write_collisions(groups: Dict[str, List[int]], path: str) -> str:
    with open(path, 'w', encoding='utf-8', newline='') as f:
        writer = csv.writer(f, quoting=csv.QUOTE_ALL)
        writer.writerow(COLLISION_HEADER)
        for key in sorted(groups):
            writer.writerow([key, '|'.join(str(i) for i in groups[key])])
    logger.info('Collision CSV generated: %s (%d groups)', path, len(groups))
    return path


def read_collisions(path: str) -> List[dict]:
    """Load collision groups as [{'key': str, 'ids': [int, ...]}] in file order."""
    if not os.path.exists(path):
        raise FileNotFoundError(f'{path} not found')

    groups = []
    with open(path, 'r', encoding='utf-8', newline='') as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, start=2):
            key = (row.get('base_normalized') or '').strip()
            ids_str = (row.get('ids') or '').strip()
            if not key or not ids_str:
                continue
            try:
                ids = [int(part) for part in ids_str.split('|') if part.strip()]
            except ValueError:
                logger.warning('Skipping collision row %d: bad ids %r', line_no, ids_str)
                continue
            groups.append({'key': key, 'ids': ids})
    return groups


# ---------------------------------------------------------------------------
# Normalization pass
# ---------------------------------------------------------------------------

class NormalizationPass:
    """Recompute normalized_name for skills and normalized_form for synonyms.

    Manual mode (default) never rewrites a colliding skill: the collision
    file is left for review and the merge step. Auto-resolve appends a stable
    fingerprint (and a counter if still taken) to each colliding key.
    """

    def __init__(self, store, basis: str = NORMALIZATION_BASIS, auto_resolve: bool = False):
        build_key('', basis=basis)
        self.store = store
        self.basis = basis
        self.auto_resolve = auto_resolve

    def plan_node_updates(self, nodes, buckets, taken) -> List[tuple]:
        """Return [(node, new_key)] for every node whose key must change."""
        updates = []
        for node in nodes:
            if not node.is_active:
                continue
            base = build_key(node.skill_name, node.category, self.basis)
            if not base:
                logger.warning('Skill %d has no usable name; left as %r', node.id, node.normalized_name)
                continue

            if len(buckets.get(base, [])) > 1:
                if not self.auto_resolve:
                    continue
                fingerprint = node_fingerprint(node)
                if is_disambiguation_of(node.normalized_name, base, fingerprint):
                    continue
                final = disambiguate(base, fingerprint, taken)
            else:
                final = base

            if final != node.normalized_name:
                updates.append((node, final))
                taken.add(final)
        return updates

    def run(self, collisions_path: str = COLLISIONS_FILE) -> dict:
        logger.info('=== START NORMALIZATION (basis=%s, auto_resolve=%s) ===',
                    self.basis, self.auto_resolve)

        nodes = self.store.nodes()
        buckets = group_by_key(nodes, self.basis)
        collisions = {key: ids for key, ids in buckets.items() if len(ids) > 1}
        write_collisions(collisions, collisions_path)

        stats = {
            'nodes': len(nodes),
            'updated': 0,
            'unchanged': 0,
            'collisions': len(collisions),
            'skipped_for_review': 0,
            'synonyms': 0,
            'synonyms_updated': 0,
            'errors': 0,
        }
        if not self.auto_resolve:
            stats['skipped_for_review'] = sum(len(ids) for ids in collisions.values())

        updates = self.plan_node_updates(nodes, buckets, self.store.taken_keys())
        stats['unchanged'] = (sum(1 for n in nodes if n.is_active)
                              - len(updates) - stats['skipped_for_review'])

        for node, final in updates:
            old = node.normalized_name
            try:
                node.normalized_name = final
                node.updated_at = datetime.utcnow()
                self.store.commit()
                stats['updated'] += 1
                logger.info('Updating Skill[%d]: %s → %s', node.id, old, final)
            except Exception as e:
                logger.error('Failed updating skill %d (%s → %s): %s', node.id, old, final, e)
                self.store.rollback()
                stats['errors'] += 1

        self._normalize_synonyms(stats)

        logger.info('Normalization summary: %s', stats)
        return stats

    def _normalize_synonyms(self, stats: dict):
        per_owner = defaultdict(set)
        for syn in self.store.synonyms():
            stats['synonyms'] += 1
            candidate = normalize_text(syn.synonym)
            if candidate in per_owner[syn.skill_taxonomy_id]:
                candidate = f'{candidate}_{syn.id}'
            per_owner[syn.skill_taxonomy_id].add(candidate)

            if candidate == syn.normalized_form:
                continue
            old = syn.normalized_form
            try:
                syn.normalized_form = candidate
                self.store.commit()
                stats['synonyms_updated'] += 1
                logger.info('Synonym[%d]: %s → %s', syn.id, old, candidate)
            except Exception as e:
                logger.error('Synonym update failed (%d): %s', syn.id, e)
                self.store.rollback()
                stats['errors'] += 1
