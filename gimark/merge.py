import logging
from collections import deque

from . import base, data, diff
from . import types
from .errors import MergeBaseNotFoundError
from .types import MergeClass, MergeOutcome

logger = logging.getLogger(__name__)


def analyze(handle: data.RepositoryHandle, local_head: types.OID, remote_head: types.OID) -> MergeClass:
    with handle.lock.read():
        if local_head == remote_head:
            return MergeClass.UP_TO_DATE
        if base.is_ancestor_of(handle, remote_head, local_head):
            return MergeClass.FAST_FORWARD
        if base.is_ancestor_of(handle, local_head, remote_head):
            return MergeClass.AHEAD
        return MergeClass.DIVERGENT


def get_merge_base(handle: data.RepositoryHandle, oid1: types.OID, oid2: types.OID) -> types.OID:
    """
    Nearest common ancestor of two commits.

    Walks breadth-first from `oid1`, parents in commit order, and returns the
    first commit that is also an ancestor of `oid2`. With several lowest common
    ancestors (criss-cross history) this picks the one closest to `oid1`.
    """
    parents2 = set(base.iter_commits_and_parents(handle, {oid2}))

    oids = deque([oid1])
    visited = set()
    while oids:
        oid = oids.popleft()
        if oid in visited:
            continue
        visited.add(oid)
        if oid in parents2:
            return oid
        oids.extend(base.get_commit(handle, oid).parents)

    raise MergeBaseNotFoundError(f'{oid1} and {oid2} share no history', operation='merge')


def merge(handle: data.RepositoryHandle, local_head: types.OID, remote_head: types.OID) -> MergeOutcome:
    with handle.lock.read():
        merge_base = get_merge_base(handle, local_head, remote_head)
        entries, conflicts = diff.merge_trees(
            base.get_commit_tree(handle, merge_base),
            base.get_commit_tree(handle, local_head),
            base.get_commit_tree(handle, remote_head),
        )
    logger.debug('Merged %s into %s over base %s: %d conflicts', remote_head, local_head, merge_base, len(conflicts))
    return MergeOutcome(
        base=merge_base,
        local=local_head,
        remote=remote_head,
        entries=entries,
        conflicted_paths=conflicts,
    )
