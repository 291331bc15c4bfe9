import csv
import json

from collisions import write_collisions
from hierarchy import compute_paths
from models import SkillTaxonomy, db
from store import TaxonomyStore


def _feed(tmp_path):
    path = tmp_path / 'feed.csv'
    with open(path, 'w', encoding='utf-8', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['skill_name', 'normalized_name', 'parent_skill', 'synonyms'])
        writer.writerow(['Python', 'python', '', '["py"]'])
        writer.writerow(['PYTHON', 'python_legacy', '', '["python3"]'])
        writer.writerow(['Django', '', 'python_legacy', '[]'])
    return str(path)


def _invoke(app, *args):
    return app.test_cli_runner().invoke(args=['taxonomy', *args])


def test_full_cycle_through_cli(app, tmp_path):
    collisions = str(tmp_path / 'collisions.csv')
    report = str(tmp_path / 'merge-report.csv')

    result = _invoke(app, 'import', _feed(tmp_path))
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['upserted'] == 3

    result = _invoke(app, 'normalize', '--collisions-file', collisions)
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['collisions'] == 1

    result = _invoke(app, 'merge', '--collisions-file', collisions,
                     '--report-file', report, '--batch-id', 'b1')
    assert result.exit_code == 0, result.output
    stats = json.loads(result.stdout)
    assert stats['merged'] == 1
    assert stats['children_moved'] == 1
    assert stats['paths']['cycles'] == 0

    with app.app_context():
        store = TaxonomyStore()
        python = store.find_node_by_key('python')
        django = store.find_node_by_key('django')
        assert django.parent_id == python.id
        assert django.hierarchy_path == f'/{python.id}/{django.id}/'
        db.session.remove()

    result = _invoke(app, 'cycles')
    assert result.exit_code == 0
    assert 'No cycles found.' in result.output

    result = _invoke(app, 'rollback', '--batch-id', 'b1')
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['restored'] == 1

    with app.app_context():
        store = TaxonomyStore()
        legacy = store.find_node_by_key('python_legacy')
        assert legacy.is_active
        assert store.find_node_by_key('django').parent_id == legacy.id
        db.session.remove()


def test_rollback_needs_exactly_one_source(app, tmp_path):
    result = _invoke(app, 'rollback')
    assert result.exit_code == 2

    result = _invoke(app, 'rollback', '--batch-id', 'b1',
                     '--report-file', str(tmp_path / 'r.csv'))
    assert result.exit_code == 2


def test_cycles_command_exits_nonzero(app):
    with app.app_context():
        a = SkillTaxonomy(skill_name='Alpha', normalized_name='alpha')
        b = SkillTaxonomy(skill_name='Beta', normalized_name='beta')
        db.session.add_all([a, b])
        db.session.flush()
        a.parent_id, b.parent_id = b.id, a.id
        db.session.commit()
        db.session.remove()

    result = _invoke(app, 'cycles')
    assert result.exit_code == 1
    assert 'Cycles detected' in result.output


def test_paths_command_batches(app):
    with app.app_context():
        root = SkillTaxonomy(skill_name='Data', normalized_name='data')
        db.session.add(root)
        db.session.flush()
        db.session.add_all([
            SkillTaxonomy(skill_name=name, normalized_name=name.lower(), parent_id=root.id)
            for name in ('Pandas', 'NumPy', 'Polars')
        ])
        db.session.commit()
        db.session.remove()

    result = _invoke(app, 'paths', '--batch-size', '2')
    assert result.exit_code == 0, result.output
    stats = json.loads(result.stdout)
    assert stats['updated'] == 4
    assert stats['batches'] == 2


def _assert_paths_current(app):
    with app.app_context():
        store = TaxonomyStore()
        expected, _ = compute_paths(store.parent_links())
        stale = {node.id: (node.hierarchy_path, expected.get(node.id))
                 for node in store.nodes() if node.hierarchy_path != expected.get(node.id)}
        db.session.remove()
    assert stale == {}


def test_lifting_canonical_refreshes_paths(app, tmp_path):
    with app.app_context():
        web = SkillTaxonomy(skill_name='Web', normalized_name='web')
        db.session.add(web)
        db.session.flush()
        legacy = SkillTaxonomy(skill_name='javascript', normalized_name='javascript_old',
                               parent_id=web.id, demand_score=0.1)
        db.session.add(legacy)
        db.session.flush()
        canonical = SkillTaxonomy(skill_name='JavaScript', normalized_name='javascript',
                                  parent_id=legacy.id, demand_score=0.9)
        db.session.add(canonical)
        db.session.flush()
        db.session.add(SkillTaxonomy(skill_name='React', normalized_name='react',
                                     parent_id=canonical.id))
        db.session.commit()
        ids = [legacy.id, canonical.id]
        db.session.remove()

    collisions = str(tmp_path / 'collisions.csv')
    write_collisions({'javascript': ids}, collisions)
    assert _invoke(app, 'paths').exit_code == 0
    _assert_paths_current(app)

    result = _invoke(app, 'merge', '--collisions-file', collisions,
                     '--report-file', str(tmp_path / 'r.csv'), '--batch-id', 'L')
    assert result.exit_code == 0, result.output
    stats = json.loads(result.stdout)
    assert stats['children_moved'] == 0
    assert stats['canonical_lifted'] == 1
    _assert_paths_current(app)

    result = _invoke(app, 'rollback', '--batch-id', 'L')
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['parents_restored'] == 1
    _assert_paths_current(app)
