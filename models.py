"""Database models for the skill taxonomy: nodes, synonyms, relations and the merge audit."""

import json
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

STATUS_ACTIVE = 'ACTIVE'
STATUS_DEPRECATED = 'DEPRECATED'


class SkillTaxonomy(db.Model):
    """A vocabulary concept. Never physically deleted; merged nodes are DEPRECATED."""
    __tablename__ = 'skill_taxonomy'

    id = db.Column(db.Integer, primary_key=True)
    skill_name = db.Column(db.String(256), nullable=False)
    normalized_name = db.Column(db.String(300), unique=True, nullable=False, index=True)
    skill_type = db.Column(db.String(30), default='TECHNICAL', nullable=False)
    category = db.Column(db.String(200))
    subcategory = db.Column(db.String(200))

    # Weak reference: no FK so a malformed feed can still be stored and diagnosed
    parent_id = db.Column(db.Integer, nullable=True, index=True)
    hierarchy_path = db.Column(db.Text)                                # /root/.../id/

    status = db.Column(db.String(20), default=STATUS_ACTIVE, nullable=False)  # ACTIVE | DEPRECATED
    merged_into_id = db.Column(db.Integer, nullable=True, index=True)

    base_weight = db.Column(db.Float, default=0.5, nullable=False)
    demand_score = db.Column(db.Float, default=0.5, nullable=False)
    trending_score = db.Column(db.Float, default=0.0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def __repr__(self):
        return f'<SkillTaxonomy {self.id} {self.normalized_name} {self.status}>'


class SkillSynonym(db.Model):
    """Alternate text for a skill, unique per (owner, normalized_form)."""
    __tablename__ = 'skill_synonyms'

    id = db.Column(db.Integer, primary_key=True)
    skill_taxonomy_id = db.Column(db.Integer, db.ForeignKey('skill_taxonomy.id'),
                                  nullable=False, index=True)
    synonym = db.Column(db.String(300), nullable=False)
    normalized_form = db.Column(db.String(300), nullable=False)
    locale = db.Column(db.String(10), default='en')
    confidence = db.Column(db.Float, default=1.0)                     # 0..1
    source = db.Column(db.String(30), default='CSV_IMPORT')           # provenance tag
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('skill_taxonomy_id', 'normalized_form', name='uq_synonym_owner_form'),
    )

    def to_dict(self):
        return {
            'synonym': self.synonym,
            'normalized_form': self.normalized_form,
            'locale': self.locale,
            'confidence': self.confidence,
            'source': self.source,
        }

    def __repr__(self):
        return f'<SkillSynonym {self.id} owner={self.skill_taxonomy_id} {self.normalized_form}>'


class SkillRelation(db.Model):
    """Typed link between two skills, unique per (source, target, relation_type)."""
    __tablename__ = 'skill_relations'

    id = db.Column(db.Integer, primary_key=True)
    source_skill_id = db.Column(db.Integer, db.ForeignKey('skill_taxonomy.id'),
                                nullable=False, index=True)
    target_skill_id = db.Column(db.Integer, db.ForeignKey('skill_taxonomy.id'),
                                nullable=False, index=True)
    relation_type = db.Column(db.String(40), nullable=False)          # open enum, e.g. COMMONLY_WITH
    strength = db.Column(db.Float, default=0.5)                       # 0..1
    bidirectional = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('source_skill_id', 'target_skill_id', 'relation_type',
                            name='uq_relation_source_target_type'),
        db.CheckConstraint('source_skill_id <> target_skill_id', name='ck_relation_no_self_loop'),
    )

    def to_dict(self):
        return {
            'source_skill_id': self.source_skill_id,
            'target_skill_id': self.target_skill_id,
            'relation_type': self.relation_type,
            'strength': self.strength,
            'bidirectional': self.bidirectional,
        }

    def __repr__(self):
        return (f'<SkillRelation {self.id} {self.source_skill_id}->{self.target_skill_id} '
                f'{self.relation_type}>')


# ---------------------------------------------------------------------------
# Cross-references owned by the profile / job modules
# ---------------------------------------------------------------------------

class ProfileSkill(db.Model):
    """A candidate profile's claimed skill. Repointed on merge, otherwise untouched."""
    __tablename__ = 'profile_skills'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, nullable=False, index=True)
    skill_taxonomy_id = db.Column(db.Integer, db.ForeignKey('skill_taxonomy.id'),
                                  nullable=False, index=True)
    proficiency = db.Column(db.String(20), default='')
    years_experience = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<ProfileSkill profile={self.profile_id} skill={self.skill_taxonomy_id}>'


class JobRequiredSkill(db.Model):
    """A job posting's required skill. Repointed on merge, otherwise untouched."""
    __tablename__ = 'job_required_skills'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.String(256), nullable=False, index=True)
    skill_taxonomy_id = db.Column(db.Integer, db.ForeignKey('skill_taxonomy.id'),
                                  nullable=False, index=True)
    importance = db.Column(db.String(20), default='required')        # required | preferred
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<JobRequiredSkill job={self.job_id[:20]} skill={self.skill_taxonomy_id}>'


# ---------------------------------------------------------------------------
# Merge audit log (append-only)
# ---------------------------------------------------------------------------

class MergeRecord(db.Model):
    """One duplicate absorbed into a canonical skill. Sole source of truth for rollback."""
    __tablename__ = 'merge_records'

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(64), nullable=False, index=True)
    canonical_id = db.Column(db.Integer, nullable=False, index=True)
    duplicate_id = db.Column(db.Integer, nullable=False, index=True)
    collision_key = db.Column(db.String(300), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    moves = db.relationship('MergeMove', backref='merge_record', lazy='dynamic',
                            order_by='MergeMove.id')

    def __repr__(self):
        return f'<MergeRecord {self.duplicate_id}->{self.canonical_id} batch={self.batch_id}>'


class MergeMove(db.Model):
    """A single row migrated or dropped by a merge, tagged with its MergeRecord.

    kind is one of: synonym, synonym_dropped, relation_source, relation_target,
    relation_dropped, child, canonical_parent, cross_reference.
    Dropped rows keep a JSON snapshot in payload so rollback can recreate them.
    """
    __tablename__ = 'merge_moves'

    id = db.Column(db.Integer, primary_key=True)
    merge_record_id = db.Column(db.Integer, db.ForeignKey('merge_records.id'),
                                nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False)
    row_id = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def payload_dict(self):
        """Parse the JSON payload into a dict."""
        try:
            return json.loads(self.payload) if self.payload else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f'<MergeMove record={self.merge_record_id} {self.kind} row={self.row_id}>'
