import csv
import json

import pytest
from pydantic import ValidationError

from importer import FeedRow, ImportPipeline
from models import SkillRelation, STATUS_DEPRECATED

COLUMNS = ['skill_name', 'normalized_name', 'skill_type', 'category', 'subcategory',
           'parent_skill', 'synonyms', 'related_skills', 'demand_score']


def _write_csv(path, rows):
    with open(path, 'w', encoding='utf-8', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(COLUMNS)
        writer.writerows(rows)
    return str(path)


@pytest.fixture
def feed(tmp_path):
    return _write_csv(tmp_path / 'feed.csv', [
        ['Programming', '', '', 'Engineering', '', '', '[]', '[]', '0.8'],
        ['Python', '', 'technical', 'Engineering', 'Languages', 'Programming',
         json.dumps(['py', 'Python3', 'py']), json.dumps(['Django', 'Missing Skill']), '0.9'],
        ['Django', '', '', 'Engineering', 'Frameworks', 'python', '[]', json.dumps(['Python']), ''],
        ['Broken', '', '', '', '', '', 'not json', '[]', ''],
        ['', '', '', '', '', '', '[]', '[]', ''],
        ['Orphan', '', '', '', '', 'Nowhere', '[]', '[]', ''],
    ])


def test_feed_row_parsing():
    row = FeedRow.model_validate({'skill_name': ' Node.js ', 'synonyms': '["node"]',
                                  'demand_score': '', 'skill_type': 'soft', 'category': ' '})
    assert row.skill_name == 'Node.js'
    assert row.canonical_key == 'node_js'
    assert row.synonyms == ['node']
    assert row.demand_score == 0.5
    assert row.skill_type == 'SOFT'
    assert row.category is None

    with pytest.raises(ValidationError):
        FeedRow.model_validate({'skill_name': 'Go', 'synonyms': '{"a": 1}'})
    with pytest.raises(ValidationError):
        FeedRow.model_validate({'skill_name': '  '})
    with pytest.raises(ValidationError):
        FeedRow.model_validate({'skill_name': 'Go', 'demand_score': 'high'})


def test_two_pass_import(store, feed):
    stats = ImportPipeline(store).run(feed)

    assert stats['rows'] == 6
    assert stats['rejected'] == 2
    assert stats['upserted'] == 4
    assert stats['synonyms_created'] == 2
    assert stats['synonyms_skipped'] == 1
    assert stats['parents_set'] == 2
    assert stats['parents_unresolved'] == 1
    assert stats['relations_created'] == 2
    assert stats['relations_unresolved'] == 1
    assert stats['errors'] == 0

    programming = store.find_node_by_key('programming')
    python = store.find_node_by_key('python')
    django = store.find_node_by_key('django')
    assert python.parent_id == programming.id
    assert django.parent_id == python.id
    assert python.skill_type == 'TECHNICAL'
    assert python.subcategory == 'Languages'
    assert python.demand_score == 0.9
    assert store.find_node_by_key('orphan').parent_id is None
    assert sorted(s.normalized_form for s in store.synonyms_of(python.id)) == ['py', 'python3']

    relation = store.find_relation(python.id, django.id, 'COMMONLY_WITH')
    assert relation.bidirectional
    assert relation.strength == 0.5
    assert store.find_relation(django.id, python.id, 'COMMONLY_WITH') is not None


def test_reimport_is_idempotent(store, feed):
    pipeline = ImportPipeline(store)
    pipeline.run(feed)
    relations = store.session.query(SkillRelation).count()

    again = pipeline.run(feed)
    assert again['upserted'] == 4
    assert again['synonyms_created'] == 0
    assert again['synonyms_skipped'] == 3
    assert again['parents_set'] == 0
    assert again['relations_created'] == 0
    assert again['relations_skipped'] == 2
    assert store.session.query(SkillRelation).count() == relations
    assert len(store.nodes()) == 4


def test_json_feed_rejects_non_string_arrays(store, tmp_path):
    path = tmp_path / 'feed.json'
    path.write_text(json.dumps([
        {'skill_name': 'Go', 'synonyms': ['golang', 5]},
        {'skill_name': 'Rust', 'synonyms': ['rust-lang']},
    ]), encoding='utf-8')

    stats = ImportPipeline(store).run(str(path))
    assert stats['rejected'] == 1
    assert stats['upserted'] == 1
    rust = store.find_node_by_key('rust')
    assert [s.normalized_form for s in store.synonyms_of(rust.id)] == ['rust_lang']


def test_reimport_does_not_revive_merged_skills(store, make_skill, tmp_path):
    canonical = make_skill('Python', key='python')
    legacy = make_skill('python', key='python_legacy', status=STATUS_DEPRECATED)
    legacy.merged_into_id = canonical.id
    store.commit()

    feed = _write_csv(tmp_path / 'feed.csv', [
        ['Python', 'python_legacy', '', '', '', '', json.dumps(['snake']), '[]', ''],
    ])
    stats = ImportPipeline(store).run(feed)

    assert stats['upserted'] == 1
    assert legacy.status == STATUS_DEPRECATED
    assert store.synonyms_of(legacy.id) == []
    assert [s.synonym for s in store.synonyms_of(canonical.id)] == ['snake']


def test_cyclic_parent_is_skipped(store, tmp_path):
    feed = _write_csv(tmp_path / 'feed.csv', [
        ['Alpha', '', '', '', '', 'Beta', '[]', '[]', ''],
        ['Beta', '', '', '', '', 'Alpha', '[]', '[]', ''],
    ])
    stats = ImportPipeline(store).run(feed)
    assert stats['parents_set'] == 1
    assert stats['parents_cyclic'] == 1
