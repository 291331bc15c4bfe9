from datetime import datetime, timedelta

import pytest

from app import create_app
from models import SkillRelation, SkillSynonym, SkillTaxonomy, db
from normalizer import normalize_text
from store import TaxonomyStore


@pytest.fixture
def app():
    """Flask app bound to a fresh in-memory SQLite database."""
    app = create_app('sqlite://')
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def store(app):
    with app.app_context():
        yield TaxonomyStore()
        db.session.remove()


@pytest.fixture
def make_skill(store):
    """Create and commit a skill. Later calls get strictly later created_at values."""
    clock = {'now': datetime(2024, 1, 1)}

    def _make(name, key=None, parent=None, demand=0.5, category=None, **fields):
        clock['now'] += timedelta(minutes=1)
        node = SkillTaxonomy(
            skill_name=name,
            normalized_name=key or normalize_text(name),
            category=category,
            parent_id=parent.id if parent is not None else None,
            demand_score=demand,
            created_at=fields.pop('created_at', clock['now']),
            **fields,
        )
        store.add(node)
        store.commit()
        return node

    return _make


@pytest.fixture
def add_synonym(store):
    def _add(owner, text, form=None):
        syn = SkillSynonym(skill_taxonomy_id=owner.id, synonym=text,
                           normalized_form=form or normalize_text(text))
        store.add(syn)
        store.commit()
        return syn

    return _add


@pytest.fixture
def add_relation(store):
    def _add(source, target, relation_type='COMMONLY_WITH', strength=0.8):
        rel = SkillRelation(source_skill_id=source.id, target_skill_id=target.id,
                            relation_type=relation_type, strength=strength)
        store.add(rel)
        store.commit()
        return rel

    return _add
