"""Merge normalization collisions into canonical skills.

For every collision group the canonical skill is picked deterministically
(highest demand_score, then earliest created_at, then lowest id) and each
remaining ACTIVE member is merged into it inside its own transaction:

  1. synonyms     : moved, or dropped if the canonical already has the form
  2. cross-refs   : profile / job rows bulk-repointed
  3. relations    : moved as source and as target, or dropped when the
                    canonical already has the same (endpoint, type) edge
  4. children     : re-parented to the canonical skill
  5. deprecation  : status DEPRECATED, merged_into_id = canonical
  6. audit        : MergeRecord + MergeMove rows, one merge-report line

Every move and drop is written to the MergeMove ledger so rollback.py can
reverse the merge exactly.
"""

import csv
import logging
import os
import secrets
from collections import defaultdict
from datetime import datetime
from typing import List, Optional

from hierarchy import ancestors_of, would_create_cycle
from models import STATUS_DEPRECATED

logger = logging.getLogger(__name__)

MERGE_REPORT_FILE = os.environ.get('TAXONOMY_MERGE_REPORT', 'merge-report.csv')
REPORT_HEADER = ['canonical_id', 'merged_id', 'normalized']

COUNTERS = (
    'synonyms_moved', 'synonyms_dropped', 'relations_moved', 'relations_dropped',
    'references_moved', 'children_moved', 'children_skipped', 'canonical_lifted',
)


def new_batch_id() -> str:
    return f"{datetime.utcnow().strftime('%Y%m%dT%H%M%SZ')}-{secrets.token_hex(3)}"


def pick_canonical(nodes):
    """Highest demand_score wins; ties go to the oldest, then the lowest id."""
    candidates = [n for n in nodes if n.is_active]
    if not candidates:
        return None
    return min(candidates, key=lambda n: (-(n.demand_score or 0.0),
                                          n.created_at or datetime.max,
                                          n.id))


# ---------------------------------------------------------------------------
# Merge report file
# ---------------------------------------------------------------------------

def append_report(path: str, canonical_id: int, duplicate_id: int, collision_key: str):
    is_new = not os.path.exists(path) or os.path.getsize(path) == 0
    with open(path, 'a', encoding='utf-8', newline='') as f:
        writer = csv.writer(f)
        if is_new:
            writer.writerow(REPORT_HEADER)
        writer.writerow([canonical_id, duplicate_id, collision_key])


def read_report(path: str) -> List[dict]:
    """Load merge report rows as [{'canonical': int, 'duplicate': int, 'key': str}]."""
    if not os.path.exists(path):
        raise FileNotFoundError(f'{path} not found')

    rows = []
    with open(path, 'r', encoding='utf-8', newline='') as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, start=2):
            try:
                canonical = int((row.get('canonical_id') or '').strip())
                duplicate = int((row.get('merged_id') or '').strip())
            except ValueError:
                logger.warning('Skipping merge report line %d: %r', line_no, row)
                continue
            rows.append({'canonical': canonical, 'duplicate': duplicate,
                         'key': (row.get('normalized') or '').strip()})
    return rows


# ---------------------------------------------------------------------------
# Merge engine
# ---------------------------------------------------------------------------

class MergeEngine:

    def __init__(self, store, report_path: Optional[str] = MERGE_REPORT_FILE,
                 batch_id: Optional[str] = None):
        self.store = store
        self.report_path = report_path
        self.batch_id = batch_id or new_batch_id()

    def run(self, groups) -> dict:
        """Merge every collision group ([{'key': ..., 'ids': [...]}])."""
        logger.info('=== START SKILL MERGE (batch %s, %d groups) ===', self.batch_id, len(groups))
        stats = {
            'batch_id': self.batch_id,
            'groups': 0,
            'merged': 0,
            'already_merged': 0,
            'skipped_groups': 0,
            'errors': 0,
        }
        for counter in COUNTERS:
            stats[counter] = 0

        for group in groups:
            stats['groups'] += 1
            self.merge_group(group['key'], group['ids'], stats)

        logger.info('Merge summary: %s', stats)
        return stats

    def merge_group(self, collision_key: str, ids, stats: dict):
        nodes = self.store.get_nodes(ids)
        missing = set(ids) - {n.id for n in nodes}
        if missing:
            logger.warning('Group %s: unknown skill ids %s', collision_key, sorted(missing))

        stats['already_merged'] += sum(1 for n in nodes if not n.is_active)
        canonical = pick_canonical(nodes)
        duplicates = [n.id for n in nodes if n.is_active and n is not canonical]
        if canonical is None or not duplicates:
            stats['skipped_groups'] += 1
            return

        logger.info('Group %s: canonical %d (%s), duplicates %s',
                    collision_key, canonical.id, canonical.skill_name, duplicates)
        canonical_id = canonical.id

        for duplicate_id in duplicates:
            try:
                counts = self.merge_duplicate(duplicate_id, canonical_id, collision_key)
                self.store.commit()
            except Exception as e:
                logger.error('Merge %d → %d failed: %s', duplicate_id, canonical_id, e,
                             exc_info=True)
                self.store.rollback()
                stats['errors'] += 1
                continue

            if counts is None:
                stats['already_merged'] += 1
                continue
            stats['merged'] += 1
            for counter, value in counts.items():
                stats[counter] += value
            if not self.report_path:
                continue
            try:
                append_report(self.report_path, canonical_id, duplicate_id, collision_key)
            except OSError as e:
                # Already committed: the MergeRecord still allows rollback by batch id
                logger.error('Could not append %d → %d to merge report %s: %s',
                             duplicate_id, canonical_id, self.report_path, e)
                stats['errors'] += 1

    def merge_duplicate(self, duplicate_id: int, canonical_id: int,
                        collision_key: str) -> Optional[dict]:
        """Fold one duplicate into the canonical skill. Caller commits.

        Returns the per-kind counts, or None when the duplicate was already
        merged (no writes happen in that case).
        """
        if duplicate_id == canonical_id:
            raise ValueError(f'Cannot merge skill {duplicate_id} into itself')
        duplicate = self.store.get_node(duplicate_id)
        canonical = self.store.get_node(canonical_id)
        if duplicate is None or canonical is None:
            raise ValueError(f'Unknown skill in merge {duplicate_id} → {canonical_id}')
        if not duplicate.is_active:
            logger.info('Skill %d already merged into %s; nothing to do',
                        duplicate_id, duplicate.merged_into_id)
            return None
        if not canonical.is_active:
            raise ValueError(f'Canonical skill {canonical_id} is deprecated')

        logger.info('Merging %d → %d', duplicate_id, canonical_id)
        record = self.store.record_merge(self.batch_id, canonical_id, duplicate_id, collision_key)
        counts = defaultdict(int)

        self._move_synonyms(record, duplicate, canonical, counts)
        self._move_references(record, duplicate, canonical, counts)
        self._move_relations(record, duplicate, canonical, counts)
        self._move_children(record, duplicate, canonical, counts)

        duplicate.status = STATUS_DEPRECATED
        duplicate.merged_into_id = canonical.id
        duplicate.updated_at = datetime.utcnow()
        return {counter: counts[counter] for counter in COUNTERS}

    # -----------------------------------------------------------------------
    # Migration steps
    # -----------------------------------------------------------------------

    def _move_synonyms(self, record, duplicate, canonical, counts):
        for syn in self.store.synonyms_of(duplicate.id):
            if self.store.find_synonym(canonical.id, syn.normalized_form):
                self.store.record_move(record, 'synonym_dropped', syn.id, syn.to_dict())
                self.store.delete(syn)
                counts['synonyms_dropped'] += 1
            else:
                syn.skill_taxonomy_id = canonical.id
                self.store.record_move(record, 'synonym', syn.id)
                counts['synonyms_moved'] += 1

    def _move_references(self, record, duplicate, canonical, counts):
        for moved in self.store.repoint_references(duplicate.id, canonical.id):
            self.store.record_move(record, 'cross_reference', None, moved)
            counts['references_moved'] += len(moved['ids'])

    def _move_relations(self, record, duplicate, canonical, counts):
        # Existence check first: a blind repoint would break (source, target, type) uniqueness
        for rel in self.store.relations_from(duplicate.id):
            if (rel.target_skill_id == canonical.id
                    or self.store.find_relation(canonical.id, rel.target_skill_id, rel.relation_type)):
                self._drop_relation(record, rel, counts)
            else:
                rel.source_skill_id = canonical.id
                self.store.record_move(record, 'relation_source', rel.id)
                counts['relations_moved'] += 1

        for rel in self.store.relations_to(duplicate.id):
            if (rel.source_skill_id == canonical.id
                    or self.store.find_relation(rel.source_skill_id, canonical.id, rel.relation_type)):
                self._drop_relation(record, rel, counts)
            else:
                rel.target_skill_id = canonical.id
                self.store.record_move(record, 'relation_target', rel.id)
                counts['relations_moved'] += 1

    def _drop_relation(self, record, rel, counts):
        self.store.record_move(record, 'relation_dropped', rel.id, rel.to_dict())
        self.store.delete(rel)
        counts['relations_dropped'] += 1

    def _move_children(self, record, duplicate, canonical, counts):
        links = self.store.parent_links()

        # Canonical living under the duplicate would end up as its own ancestor
        if duplicate.id in ancestors_of(links, canonical.id):
            new_parent = duplicate.parent_id
            if would_create_cycle(links, canonical.id, new_parent):
                new_parent = None
            self.store.record_move(record, 'canonical_parent', canonical.id,
                                   {'parent_id': canonical.parent_id, 'lifted_to': new_parent})
            logger.info('Lifting canonical %d from parent %s to %s',
                        canonical.id, canonical.parent_id, new_parent)
            canonical.parent_id = new_parent
            links[canonical.id] = new_parent
            counts['canonical_lifted'] += 1

        for child in self.store.children_of(duplicate.id):
            if would_create_cycle(links, child.id, canonical.id):
                logger.warning('Child %d of %d left in place: re-parenting to %d closes a cycle',
                               child.id, duplicate.id, canonical.id)
                counts['children_skipped'] += 1
                continue
            child.parent_id = canonical.id
            links[child.id] = canonical.id
            self.store.record_move(record, 'child', child.id)
            counts['children_moved'] += 1
