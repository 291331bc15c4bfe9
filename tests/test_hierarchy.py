import pytest

from hierarchy import (HierarchyPathBuilder, ancestors_of, compute_paths, detect_cycles,
                       format_cycle, would_create_cycle)


def test_detect_cycles_two_node_loop():
    cycles = detect_cycles({1: 2, 2: 1})
    assert cycles == [[1, 2, 1]]
    assert format_cycle(cycles[0]) == '1 → 2 → 1'


def test_detect_cycles_self_loop_and_tail():
    assert detect_cycles({5: 5}) == [[5, 5]]
    # 1 hangs off the 2 <-> 3 loop but is not part of it
    assert detect_cycles({1: 2, 2: 3, 3: 2}) == [[2, 3, 2]]


def test_detect_cycles_acyclic_forest():
    assert detect_cycles({1: None, 2: 1, 3: 2, 4: None, 5: 4}) == []


def test_ancestors_and_would_create_cycle():
    links = {1: None, 2: 1, 3: 2}
    assert ancestors_of(links, 3) == [2, 1]
    assert would_create_cycle(links, 1, 3)
    assert would_create_cycle(links, 2, 2)
    assert not would_create_cycle(links, 3, 1)
    assert not would_create_cycle(links, 1, None)
    assert would_create_cycle({1: None, 2: 3, 3: 2}, 1, 2)


def test_compute_paths_chain():
    paths, errors = compute_paths({1: None, 2: 1, 3: 2})
    assert paths == {1: '/1/', 2: '/1/2/', 3: '/1/2/3/'}
    assert errors == {}


def test_compute_paths_reports_structural_errors():
    links = {1: None, 2: 1, 3: 4, 4: 3, 5: 3, 6: 99}
    paths, errors = compute_paths(links)
    assert paths == {1: '/1/', 2: '/1/2/'}
    assert set(errors) == {3, 4, 5, 6}
    assert 'cycle' in errors[3].reason
    assert 'ancestor 3' in errors[5].reason
    assert errors[6].reason == 'parent 99 does not exist'


def test_compute_paths_deep_chain_is_iterative():
    depth = 2000
    links = {i: i + 1 for i in range(1, depth)}
    links[depth] = None
    paths, errors = compute_paths(links)
    assert not errors
    assert len(paths) == depth
    assert paths[1].startswith(f'/{depth}/')
    assert paths[1].endswith('/2/1/')
    assert detect_cycles(links) == []


def test_path_builder_writes_and_is_idempotent(store, make_skill):
    frontend = make_skill('Frontend')
    react = make_skill('React', parent=frontend)
    redux = make_skill('Redux', parent=react)

    stats = HierarchyPathBuilder(store, batch_size=2).run()
    assert stats['updated'] == 3
    assert stats['batches'] == 2
    assert stats['structural_errors'] == 0
    assert redux.hierarchy_path == f'/{frontend.id}/{react.id}/{redux.id}/'

    again = HierarchyPathBuilder(store).run()
    assert again['updated'] == 0
    assert again['unchanged'] == 3


def test_path_builder_skips_cyclic_nodes(store, make_skill):
    root = make_skill('Programming')
    a = make_skill('Alpha')
    b = make_skill('Beta', parent=a)
    a.parent_id = b.id
    store.commit()

    stats = HierarchyPathBuilder(store).run()
    assert stats['cycles'] == 1
    assert stats['structural_errors'] == 2
    assert stats['updated'] == 1
    assert root.hierarchy_path == f'/{root.id}/'
    assert a.hierarchy_path is None


def test_path_builder_rejects_bad_batch_size(store):
    with pytest.raises(ValueError):
        HierarchyPathBuilder(store, batch_size=0)
