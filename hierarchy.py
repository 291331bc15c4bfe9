"""Parent-link validation and materialized hierarchy paths.

detect_cycles() is the pre-flight gate for anything that walks parent links.
HierarchyPathBuilder fills SkillTaxonomy.hierarchy_path (e.g. /1/2/3/ for
Frontend > React > Redux) from one snapshot of the parent links, writing in
fixed-size batches with one commit per batch.
"""

import logging
import os
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PATH_BATCH_SIZE = int(os.environ.get('TAXONOMY_PATH_BATCH_SIZE', '500'))

_UNVISITED, _ON_STACK, _DONE = 0, 1, 2


class StructuralError(ValueError):
    """A node whose ancestor chain never reaches a root."""

    def __init__(self, node_id: int, reason: str):
        super().__init__(f'Skill {node_id}: {reason}')
        self.node_id = node_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Cycle detection
# ---------------------------------------------------------------------------

def detect_cycles(parent_links: Dict[int, Optional[int]]) -> List[List[int]]:
    """Return every parent cycle as [a, b, ..., a]; empty for a valid forest.

    Three-state DFS (unvisited / on-stack / done) following the single parent
    pointer of each node, so each node is entered once: O(V).
    """
    state: Dict[int, int] = {}
    cycles = []

    for start in sorted(parent_links):
        if state.get(start, _UNVISITED) != _UNVISITED:
            continue
        path = []
        position = {}
        node = start
        while True:
            node_state = state.get(node, _UNVISITED)
            if node_state == _ON_STACK:
                cycles.append(path[position[node]:] + [node])
                break
            if node_state == _DONE:
                break
            state[node] = _ON_STACK
            position[node] = len(path)
            path.append(node)
            parent = parent_links.get(node)
            if parent is None or parent not in parent_links:
                break
            node = parent
        for visited in path:
            state[visited] = _DONE

    return cycles


def nodes_in_cycles(cycles: List[List[int]]) -> set:
    return {node for cycle in cycles for node in cycle}


def format_cycle(cycle: List[int]) -> str:
    return ' → '.join(str(node) for node in cycle)


def ancestors_of(parent_links: Dict[int, Optional[int]], node_id: int) -> List[int]:
    """Parent chain of node_id, nearest first. Stops at a root, a dangling id or a loop."""
    chain = []
    seen = {node_id}
    parent = parent_links.get(node_id)
    while parent is not None and parent not in seen:
        chain.append(parent)
        seen.add(parent)
        parent = parent_links.get(parent)
    return chain


def would_create_cycle(parent_links: Dict[int, Optional[int]], node_id: int,
                       new_parent_id: Optional[int]) -> bool:
    """True if pointing node_id at new_parent_id closes a loop.

    Also True when new_parent_id already sits on a cyclic chain: the node
    would never reach a root either way.
    """
    if new_parent_id is None:
        return False
    if new_parent_id == node_id:
        return True
    seen = set()
    current = new_parent_id
    while current is not None:
        if current == node_id or current in seen:
            return True
        seen.add(current)
        current = parent_links.get(current)
    return False


# ---------------------------------------------------------------------------
# Hierarchy paths
# ---------------------------------------------------------------------------

def compute_paths(parent_links: Dict[int, Optional[int]]
                  ) -> Tuple[Dict[int, str], Dict[int, StructuralError]]:
    """Compute /root/.../id/ for every node that has a well-formed ancestor chain.

    Iterative with an explicit work stack; a node's path is computed once
    and reused by its descendants. Nodes on a cycle, below a cycle, or below
    a missing parent come back in the error map instead.
    """
    cycles = detect_cycles(parent_links)
    cyclic = {}
    for cycle in cycles:
        for node in cycle:
            cyclic.setdefault(node, format_cycle(cycle))

    paths: Dict[int, str] = {}
    errors: Dict[int, StructuralError] = {}

    for node_id in sorted(parent_links):
        if node_id in paths or node_id in errors:
            continue

        stack = []
        current = node_id
        base = ''
        reason = None
        while True:
            if current in paths:
                base = paths[current]
                break
            if current in errors:
                reason = f'ancestor {current} is unresolvable ({errors[current].reason})'
                break
            if current in cyclic:
                errors[current] = StructuralError(current, f'part of parent cycle {cyclic[current]}')
                reason = f'ancestor {current} is part of parent cycle {cyclic[current]}'
                break
            stack.append(current)
            parent = parent_links[current]
            if parent is None:
                break
            if parent not in parent_links:
                reason = f'parent {parent} does not exist'
                break
            current = parent

        if reason:
            for node in stack:
                errors[node] = StructuralError(node, reason)
            continue

        path = base or '/'
        for node in reversed(stack):
            path = f'{path}{node}/'
            paths[node] = path

    return paths, errors


class HierarchyPathBuilder:
    """Recomputes and stores hierarchy_path for every skill."""

    def __init__(self, store, batch_size: int = PATH_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError('batch_size must be positive')
        self.store = store
        self.batch_size = batch_size

    def run(self) -> dict:
        # One snapshot for the whole run: batches never mix pre/post re-parenting state
        links = self.store.parent_links()
        paths, errors = compute_paths(links)
        cycles = detect_cycles(links)

        stats = {
            'nodes': len(links),
            'updated': 0,
            'unchanged': 0,
            'structural_errors': len(errors),
            'cycles': len(cycles),
            'batches': 0,
            'batch_errors': 0,
        }

        for cycle in cycles:
            logger.warning('Parent cycle detected: %s', format_cycle(cycle))
        for node_id in sorted(errors):
            logger.warning('Skipping hierarchy path: %s', errors[node_id])

        pending = []
        for node in self.store.nodes():
            path = paths.get(node.id)
            if path is None:
                continue
            if node.hierarchy_path == path:
                stats['unchanged'] += 1
            else:
                pending.append((node, path))

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            stats['batches'] += 1
            try:
                for node, path in batch:
                    node.hierarchy_path = path
                self.store.commit()
                stats['updated'] += len(batch)
                logger.info('  • Updated %d/%d paths...', stats['updated'], len(pending))
            except Exception as e:
                logger.error('Hierarchy path batch %d failed: %s', stats['batches'], e)
                self.store.rollback()
                stats['batch_errors'] += 1

        logger.info('Hierarchy paths: %s', stats)
        return stats
