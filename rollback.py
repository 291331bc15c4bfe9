"""Reverse a merge batch from its audit trail.

Input is either a batch id or a merge report file; each line/record is
matched to its MergeRecord and undone newest-first, one transaction per
record. The MergeMove ledger says exactly which rows moved, so nothing is
guessed from synonym text or relation strength. Rows that changed after the
merge (edited, re-merged, or now conflicting with a uniqueness constraint)
are left alone and counted as conflicts: this is an operator-error recovery
path, not a transactional inverse.
"""

import logging
from datetime import datetime
from typing import List, Optional

from hierarchy import would_create_cycle
from merge import read_report
from models import STATUS_ACTIVE, SkillRelation, SkillSynonym

logger = logging.getLogger(__name__)

RESTORE_COUNTERS = (
    'synonyms_restored', 'relations_restored', 'references_restored',
    'children_restored', 'parents_restored', 'conflicts',
)


class RollbackEngine:

    def __init__(self, store):
        self.store = store

    def rollback_batch(self, batch_id: str) -> dict:
        records = self.store.merge_records(batch_id)
        if not records:
            logger.warning('No merge records found for batch %s', batch_id)
        return self.rollback_records(records)

    def rollback_report(self, report_path: str) -> dict:
        """Roll back every merge named in a merge report file."""
        records = []
        missing = 0
        for row in read_report(report_path):
            record = self.store.latest_merge_record(row['canonical'], row['duplicate'])
            if record is None:
                logger.warning('No merge record for %d → %d; only status will be restored',
                               row['duplicate'], row['canonical'])
                missing += 1
                records.append(row)
            else:
                records.append(record)
        stats = self.rollback_records(records)
        stats['unrecorded'] = missing
        return stats

    def rollback_records(self, records) -> dict:
        logger.info('=== ROLLBACK STARTING (%d merges) ===', len(records))
        stats = {
            'records': len(records),
            'restored': 0,
            'already_active': 0,
            'errors': 0,
        }
        for counter in RESTORE_COUNTERS:
            stats[counter] = 0

        for entry in reversed(records):
            if isinstance(entry, dict):
                canonical_id, duplicate_id, record = entry['canonical'], entry['duplicate'], None
            else:
                canonical_id, duplicate_id, record = entry.canonical_id, entry.duplicate_id, entry
            try:
                counts = self.rollback_one(canonical_id, duplicate_id, record)
                self.store.commit()
            except Exception as e:
                logger.error('Rollback of %d ⬅ %d failed: %s', duplicate_id, canonical_id, e,
                             exc_info=True)
                self.store.rollback()
                stats['errors'] += 1
                continue

            if counts is None:
                stats['already_active'] += 1
                continue
            stats['restored'] += 1
            for counter, value in counts.items():
                stats[counter] += value

        logger.info('Rollback summary: %s', stats)
        return stats

    def rollback_one(self, canonical_id: int, duplicate_id: int,
                     record=None) -> Optional[dict]:
        """Reactivate one duplicate and move its rows back. Caller commits."""
        duplicate = self.store.get_node(duplicate_id)
        if duplicate is None:
            raise ValueError(f'Unknown skill {duplicate_id}')
        if duplicate.is_active:
            logger.info('Skill %d is already active; nothing to roll back', duplicate_id)
            return None
        if duplicate.merged_into_id != canonical_id:
            raise ValueError(f'Skill {duplicate_id} is merged into {duplicate.merged_into_id}, '
                             f'not {canonical_id}')

        logger.info('Rolling back: %d ⬅ canonical %d', duplicate_id, canonical_id)
        duplicate.status = STATUS_ACTIVE
        duplicate.merged_into_id = None
        duplicate.updated_at = datetime.utcnow()

        counts = {counter: 0 for counter in RESTORE_COUNTERS}
        moves = self.store.moves_of(record) if record is not None else []
        if not moves:
            logger.warning('No move ledger for %d → %d; rows stay on the canonical skill',
                           duplicate_id, canonical_id)
            return counts

        links = self.store.parent_links()
        for move in reversed(moves):
            handler = getattr(self, f'_restore_{move.kind}', None)
            if handler is None:
                logger.warning('Unknown merge move kind %s (move %d)', move.kind, move.id)
                counts['conflicts'] += 1
                continue
            handler(move, canonical_id, duplicate_id, links, counts)
        return counts

    # -----------------------------------------------------------------------
    # Per-kind restore steps
    # -----------------------------------------------------------------------

    def _restore_synonym(self, move, canonical_id, duplicate_id, links, counts):
        syn = self.store.get_synonym(move.row_id)
        if (syn is None or syn.skill_taxonomy_id != canonical_id
                or self.store.find_synonym(duplicate_id, syn.normalized_form)):
            counts['conflicts'] += 1
            return
        syn.skill_taxonomy_id = duplicate_id
        counts['synonyms_restored'] += 1

    def _restore_synonym_dropped(self, move, canonical_id, duplicate_id, links, counts):
        data = move.payload_dict()
        if not data.get('synonym') or self.store.find_synonym(duplicate_id, data.get('normalized_form')):
            counts['conflicts'] += 1
            return
        self.store.add(SkillSynonym(skill_taxonomy_id=duplicate_id, **data))
        counts['synonyms_restored'] += 1

    def _restore_relation_source(self, move, canonical_id, duplicate_id, links, counts):
        rel = self.store.get_relation(move.row_id)
        if (rel is None or rel.source_skill_id != canonical_id
                or rel.target_skill_id == duplicate_id
                or self.store.find_relation(duplicate_id, rel.target_skill_id, rel.relation_type)):
            counts['conflicts'] += 1
            return
        rel.source_skill_id = duplicate_id
        counts['relations_restored'] += 1

    def _restore_relation_target(self, move, canonical_id, duplicate_id, links, counts):
        rel = self.store.get_relation(move.row_id)
        if (rel is None or rel.target_skill_id != canonical_id
                or rel.source_skill_id == duplicate_id
                or self.store.find_relation(rel.source_skill_id, duplicate_id, rel.relation_type)):
            counts['conflicts'] += 1
            return
        rel.target_skill_id = duplicate_id
        counts['relations_restored'] += 1

    def _restore_relation_dropped(self, move, canonical_id, duplicate_id, links, counts):
        data = move.payload_dict()
        source_id = data.get('source_skill_id')
        target_id = data.get('target_skill_id')
        if (not source_id or not target_id or source_id == target_id
                or self.store.get_node(source_id) is None
                or self.store.get_node(target_id) is None
                or self.store.find_relation(source_id, target_id, data.get('relation_type'))):
            counts['conflicts'] += 1
            return
        self.store.add(SkillRelation(**data))
        counts['relations_restored'] += 1

    def _restore_child(self, move, canonical_id, duplicate_id, links, counts):
        child = self.store.get_node(move.row_id)
        if (child is None or child.parent_id != canonical_id
                or would_create_cycle(links, child.id, duplicate_id)):
            counts['conflicts'] += 1
            return
        child.parent_id = duplicate_id
        links[child.id] = duplicate_id
        counts['children_restored'] += 1

    def _restore_canonical_parent(self, move, canonical_id, duplicate_id, links, counts):
        data = move.payload_dict()
        canonical = self.store.get_node(canonical_id)
        previous = data.get('parent_id')
        if (canonical is None or canonical.parent_id != data.get('lifted_to')
                or would_create_cycle(links, canonical_id, previous)):
            counts['conflicts'] += 1
            return
        canonical.parent_id = previous
        links[canonical_id] = previous
        counts['parents_restored'] += 1

    def _restore_cross_reference(self, move, canonical_id, duplicate_id, links, counts):
        data = move.payload_dict()
        ids: List[int] = data.get('ids') or []
        restored = self.store.restore_references(data.get('table'), ids, canonical_id, duplicate_id)
        counts['references_restored'] += restored
        counts['conflicts'] += len(ids) - restored
