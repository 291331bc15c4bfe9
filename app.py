import json
import logging
import os

from dotenv import load_dotenv
load_dotenv()  # Load .env file (DATABASE_URL, TAXONOMY_* settings)

import click
from flask import Flask
from flask.cli import AppGroup, FlaskGroup

from collisions import COLLISIONS_FILE, NORMALIZATION_BASIS, NormalizationPass, read_collisions
from hierarchy import PATH_BATCH_SIZE, HierarchyPathBuilder, detect_cycles, format_cycle
from importer import ImportPipeline
from merge import MERGE_REPORT_FILE, MergeEngine
from models import db
from normalizer import BASES
from rollback import RollbackEngine
from store import TaxonomyStore

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s [%(levelname)s] %(message)s')
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Database: Postgres via DATABASE_URL, else a local SQLite file
# ---------------------------------------------------------------------------

def _database_url() -> str:
    database_url = os.environ.get('DATABASE_URL', '')
    if database_url:
        # Hosted Postgres URLs start with postgres:// but SQLAlchemy needs postgresql://
        if database_url.startswith('postgres://'):
            database_url = database_url.replace('postgres://', 'postgresql://', 1)
        return database_url
    _db_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'taxonomy.db')
    return f'sqlite:///{_db_path}'


def create_app(database_url: str = None) -> Flask:
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url or _database_url()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    db.init_app(app)
    with app.app_context():
        db.create_all()
    app.cli.add_command(taxonomy_cli)
    return app


# ---------------------------------------------------------------------------
# Batch commands: flask --app app taxonomy <command>
# ---------------------------------------------------------------------------

taxonomy_cli = AppGroup('taxonomy', help='Offline skill taxonomy maintenance passes.')


def _echo_summary(stats: dict):
    click.echo(json.dumps(stats, indent=2, sort_keys=True, default=str))


@taxonomy_cli.command('import')
@click.argument('feed', type=click.Path(exists=True, dir_okay=False))
def import_command(feed):
    """Import a taxonomy feed (CSV or JSON)."""
    _echo_summary(ImportPipeline(TaxonomyStore()).run(feed))


@taxonomy_cli.command('normalize')
@click.option('--basis', type=click.Choice(BASES), default=NORMALIZATION_BASIS, show_default=True)
@click.option('--auto-resolve', is_flag=True,
              help='Disambiguate colliding keys with a stable hash instead of leaving them for review.')
@click.option('--collisions-file', default=COLLISIONS_FILE, show_default=True)
def normalize_command(basis, auto_resolve, collisions_file):
    """Recompute canonical keys and write the collision review file."""
    stats = NormalizationPass(TaxonomyStore(), basis=basis, auto_resolve=auto_resolve) \
        .run(collisions_file)
    _echo_summary(stats)


@taxonomy_cli.command('cycles')
def cycles_command():
    """Report parent-link cycles. Exits 1 if any are found."""
    cycles = detect_cycles(TaxonomyStore().parent_links())
    if not cycles:
        click.echo('No cycles found.')
        return
    click.echo('Cycles detected in taxonomy:')
    for cycle in cycles:
        click.echo(f'  • {format_cycle(cycle)}')
    raise SystemExit(1)


@taxonomy_cli.command('paths')
@click.option('--batch-size', type=int, default=PATH_BATCH_SIZE, show_default=True)
def paths_command(batch_size):
    """Rebuild materialized hierarchy paths."""
    _echo_summary(HierarchyPathBuilder(TaxonomyStore(), batch_size=batch_size).run())


@taxonomy_cli.command('merge')
@click.option('--collisions-file', default=COLLISIONS_FILE, show_default=True)
@click.option('--report-file', default=MERGE_REPORT_FILE, show_default=True)
@click.option('--batch-id', default=None, help='Defaults to a timestamped id.')
@click.option('--skip-paths', is_flag=True, help='Do not rebuild hierarchy paths afterwards.')
def merge_command(collisions_file, report_file, batch_id, skip_paths):
    """Merge duplicate skills listed in the collision review file."""
    store = TaxonomyStore()
    stats = MergeEngine(store, report_path=report_file, batch_id=batch_id) \
        .run(read_collisions(collisions_file))
    if (stats['children_moved'] or stats['canonical_lifted']) and not skip_paths:
        stats['paths'] = HierarchyPathBuilder(store).run()
    _echo_summary(stats)


@taxonomy_cli.command('rollback')
@click.option('--report-file', default=None, help='Merge report to reverse.')
@click.option('--batch-id', default=None, help='Merge batch to reverse.')
@click.option('--skip-paths', is_flag=True, help='Do not rebuild hierarchy paths afterwards.')
def rollback_command(report_file, batch_id, skip_paths):
    """Reverse a merge batch."""
    if bool(report_file) == bool(batch_id):
        raise click.UsageError('Pass exactly one of --report-file or --batch-id.')
    store = TaxonomyStore()
    engine = RollbackEngine(store)
    stats = engine.rollback_batch(batch_id) if batch_id else engine.rollback_report(report_file)
    if (stats['children_restored'] or stats['parents_restored']) and not skip_paths:
        stats['paths'] = HierarchyPathBuilder(store).run()
    _echo_summary(stats)


cli = FlaskGroup(create_app=create_app)


if __name__ == '__main__':
    cli()
