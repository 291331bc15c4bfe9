"""Repository over the taxonomy tables.

Every engine component receives a TaxonomyStore at construction instead of
reaching for a global session. The process entrypoint (app.py) owns the
application context and therefore the connection lifecycle.
"""

import json
import logging
from typing import Dict, List, Optional

from models import (JobRequiredSkill, MergeMove, MergeRecord, ProfileSkill,
                    SkillRelation, SkillSynonym, SkillTaxonomy, STATUS_ACTIVE, db)

logger = logging.getLogger(__name__)

# (model, column) pairs of externally owned rows that point at a skill id
CROSS_REFERENCES = (
    (ProfileSkill, 'skill_taxonomy_id'),
    (JobRequiredSkill, 'skill_taxonomy_id'),
)


class TaxonomyStore:

    def __init__(self, session=None, cross_references=CROSS_REFERENCES):
        self.session = session if session is not None else db.session
        self.cross_references = tuple(cross_references)

    # -----------------------------------------------------------------------
    # Transactions
    # -----------------------------------------------------------------------

    def add(self, row):
        self.session.add(row)
        return row

    def delete(self, row):
        self.session.delete(row)

    def flush(self):
        self.session.flush()

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    # -----------------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------------

    def get_node(self, node_id: int) -> Optional[SkillTaxonomy]:
        return self.session.get(SkillTaxonomy, node_id)

    def get_nodes(self, ids) -> List[SkillTaxonomy]:
        ids = list(ids)
        if not ids:
            return []
        return (self.session.query(SkillTaxonomy).filter(SkillTaxonomy.id.in_(ids))
                .order_by(SkillTaxonomy.id).all())

    def find_node_by_key(self, key: str) -> Optional[SkillTaxonomy]:
        return self.session.query(SkillTaxonomy).filter_by(normalized_name=key).first()

    def nodes(self, active_only: bool = False) -> List[SkillTaxonomy]:
        query = self.session.query(SkillTaxonomy)
        if active_only:
            query = query.filter_by(status=STATUS_ACTIVE)
        return query.order_by(SkillTaxonomy.id).all()

    def children_of(self, node_id: int) -> List[SkillTaxonomy]:
        return (self.session.query(SkillTaxonomy).filter_by(parent_id=node_id)
                .order_by(SkillTaxonomy.id).all())

    def parent_links(self) -> Dict[int, Optional[int]]:
        """Snapshot of id -> parent_id for every node."""
        rows = self.session.query(SkillTaxonomy.id, SkillTaxonomy.parent_id).all()
        return {node_id: parent_id for node_id, parent_id in rows}

    def resolve_active(self, node: Optional[SkillTaxonomy]) -> Optional[SkillTaxonomy]:
        """Follow merged_into_id from a deprecated node to the ACTIVE skill that absorbed it."""
        seen = set()
        while node is not None and not node.is_active:
            if node.id in seen or node.merged_into_id is None:
                logger.warning('Skill %d does not resolve to an active skill', node.id)
                return None
            seen.add(node.id)
            node = self.get_node(node.merged_into_id)
        return node

    def taken_keys(self) -> set:
        rows = self.session.query(SkillTaxonomy.normalized_name).all()
        return {key for (key,) in rows if key}

    # -----------------------------------------------------------------------
    # Synonyms
    # -----------------------------------------------------------------------

    def synonyms(self) -> List[SkillSynonym]:
        return self.session.query(SkillSynonym).order_by(SkillSynonym.id).all()

    def synonyms_of(self, owner_id: int) -> List[SkillSynonym]:
        return (self.session.query(SkillSynonym).filter_by(skill_taxonomy_id=owner_id)
                .order_by(SkillSynonym.id).all())

    def find_synonym(self, owner_id: int, normalized_form: str) -> Optional[SkillSynonym]:
        return self.session.query(SkillSynonym).filter_by(
            skill_taxonomy_id=owner_id, normalized_form=normalized_form).first()

    def get_synonym(self, synonym_id: int) -> Optional[SkillSynonym]:
        return self.session.get(SkillSynonym, synonym_id)

    # -----------------------------------------------------------------------
    # Relations
    # -----------------------------------------------------------------------

    def relations_from(self, node_id: int) -> List[SkillRelation]:
        return (self.session.query(SkillRelation).filter_by(source_skill_id=node_id)
                .order_by(SkillRelation.id).all())

    def relations_to(self, node_id: int) -> List[SkillRelation]:
        return (self.session.query(SkillRelation).filter_by(target_skill_id=node_id)
                .order_by(SkillRelation.id).all())

    def find_relation(self, source_id: int, target_id: int,
                      relation_type: str) -> Optional[SkillRelation]:
        return self.session.query(SkillRelation).filter_by(
            source_skill_id=source_id, target_skill_id=target_id,
            relation_type=relation_type).first()

    def get_relation(self, relation_id: int) -> Optional[SkillRelation]:
        return self.session.get(SkillRelation, relation_id)

    # -----------------------------------------------------------------------
    # Cross-references
    # -----------------------------------------------------------------------

    def repoint_references(self, old_id: int, new_id: int) -> List[dict]:
        """Bulk-move every external row from old_id to new_id.

        Returns [{'table': ..., 'ids': [...]}] describing what moved so the
        caller can record it for rollback.
        """
        moved = []
        for model, column in self.cross_references:
            col = getattr(model, column)
            ids = [row_id for (row_id,) in
                   self.session.query(model.id).filter(col == old_id).order_by(model.id).all()]
            if not ids:
                continue
            (self.session.query(model)
             .filter(model.id.in_(ids))
             .update({column: new_id}, synchronize_session='fetch'))
            moved.append({'table': model.__tablename__, 'ids': ids})
        return moved

    def restore_references(self, table: str, ids, from_id: int, to_id: int) -> int:
        """Move the listed rows of one consumer table back, if still at from_id."""
        for model, column in self.cross_references:
            if model.__tablename__ != table:
                continue
            col = getattr(model, column)
            return (self.session.query(model)
                    .filter(model.id.in_(list(ids)), col == from_id)
                    .update({column: to_id}, synchronize_session='fetch'))
        logger.warning('Unknown cross-reference table %s; %d rows not restored',
                       table, len(ids))
        return 0

    def count_references(self, node_id: int) -> int:
        total = 0
        for model, column in self.cross_references:
            total += self.session.query(model).filter(getattr(model, column) == node_id).count()
        return total

    # -----------------------------------------------------------------------
    # Merge audit
    # -----------------------------------------------------------------------

    def record_merge(self, batch_id: str, canonical_id: int, duplicate_id: int,
                     collision_key: str) -> MergeRecord:
        record = MergeRecord(batch_id=batch_id, canonical_id=canonical_id,
                             duplicate_id=duplicate_id, collision_key=collision_key)
        self.session.add(record)
        self.session.flush()  # Get record.id for the move rows
        return record

    def record_move(self, record: MergeRecord, kind: str, row_id: Optional[int] = None,
                    payload: Optional[dict] = None) -> MergeMove:
        move = MergeMove(merge_record_id=record.id, kind=kind, row_id=row_id,
                         payload=json.dumps(payload) if payload is not None else None)
        self.session.add(move)
        return move

    def merge_records(self, batch_id: Optional[str] = None) -> List[MergeRecord]:
        query = self.session.query(MergeRecord)
        if batch_id:
            query = query.filter_by(batch_id=batch_id)
        return query.order_by(MergeRecord.id).all()

    def latest_merge_record(self, canonical_id: int, duplicate_id: int) -> Optional[MergeRecord]:
        return (self.session.query(MergeRecord)
                .filter_by(canonical_id=canonical_id, duplicate_id=duplicate_id)
                .order_by(MergeRecord.id.desc()).first())

    def moves_of(self, record: MergeRecord) -> List[MergeMove]:
        return (self.session.query(MergeMove).filter_by(merge_record_id=record.id)
                .order_by(MergeMove.id).all())
