"""
Push and pull between a local repository and its remote.

Every verb here holds the repository write lock from start to finish, so a
fetch, the analysis of its result and the merge that follows are never
interleaved with another mutation of the same repository. The one exception
is push, which lets go of it while the remote branch is moved.

The branch is moved before the index and the working files are updated; a
merge interrupted before that point leaves the repository as it was.

Failures are raised as soon as they happen; conflicts are not failures and
are returned to the caller to resolve.

Example:
    >>> handle = sync.clone('https://example.com/notes', 'notes', token)
    >>> result = sync.pull(handle, credential=token)
    >>> for conflict in result.conflicts:
    ...     sync.resolve_conflict(handle, conflict.path, Resolution.USE_REMOTE)
    >>> sync.commit(handle, 'Resolve conflicts')
    >>> sync.push(handle, credential=token)
"""

from __future__ import annotations

import logging
import os
from typing import Iterable

from gimark import base, config, conflicts, data, diff, merge, remote
from gimark import types
from gimark.conflicts import has_conflicts, list_conflicts
from gimark.errors import (ConflictedIndexError, DirtyIndexError, NonFastForwardError,
                           NotFoundError, ResolutionError, StorageError)
from gimark.types import (ConflictEntry, ConflictStages, Index, MergeClass, PullResult,
                          RefValue, Resolution, SyncPhase)

logger = logging.getLogger(__name__)

MERGE_MESSAGE = 'Merge remote changes'

__all__ = [
    'init', 'clone', 'stage', 'unstage', 'commit', 'current_head', 'pull', 'push',
    'has_conflicts', 'list_conflicts', 'resolve_conflict',
]


def _phase(operation: str, phase: SyncPhase) -> None:
    logger.debug('%s: %s', operation, phase.value)


def _remote_url(handle: data.RepositoryHandle, remote_url: str | None) -> str:
    remote_url = remote_url or config.load_config(handle).remote_url
    if not remote_url:
        raise NotFoundError('No remote configured for this repository', operation='remote')
    return remote_url


def _identity(handle: data.RepositoryHandle, identity: types.Identity | None) -> types.Identity:
    return identity or config.load_config(handle).identity


def init(path: str) -> data.RepositoryHandle:
    return data.open_or_init(path)


def clone(remote_url: str, path: str, credential: str | None, **http_options) -> data.RepositoryHandle:
    path = os.path.abspath(path)
    if os.path.exists(path) and (not os.path.isdir(path) or os.listdir(path)):
        raise StorageError(f'Cannot clone into {path}, it already exists and is not empty', operation='clone')

    handle = data.init(path)
    with handle.lock.write():
        config.save_config(handle, config.RepoConfig(remote_url=remote_url))
        _phase('clone', SyncPhase.FETCHING)
        tip = remote.fetch(handle, remote_url, credential, **http_options)
        if tip is not None:
            _phase('clone', SyncPhase.FAST_FORWARDING)
            base.reset_to(handle, tip)
        _phase('clone', SyncPhase.IDLE)
    logger.info('Cloned %s into %s', remote_url, path)
    return handle


def stage(handle: data.RepositoryHandle, paths: Iterable[str]) -> None:
    base.stage(handle, paths)


def unstage(handle: data.RepositoryHandle, paths: Iterable[str]) -> None:
    base.unstage(handle, paths)


def commit(handle: data.RepositoryHandle, message: str, identity: types.Identity | None = None,
           when: int | None = None) -> types.OID:
    with handle.lock.write():
        _phase('commit', SyncPhase.COMMITTING)
        oid = base.commit(handle, message, _identity(handle, identity), when=when)
        _phase('commit', SyncPhase.IDLE)
        return oid


def current_head(handle: data.RepositoryHandle) -> types.OID:
    return base.current_head(handle)


def pull(handle: data.RepositoryHandle, remote_url: str | None = None, credential: str | None = None,
         identity: types.Identity | None = None, **http_options) -> PullResult:
    with handle.lock.write():
        remote_url = _remote_url(handle, remote_url)
        index = data.read_index(handle)
        if index.conflicted or base.pending_merge_head(handle, index):
            raise ConflictedIndexError('Resolve and commit the previous merge first', operation='pull')
        if base.has_staged_changes(handle):
            raise DirtyIndexError('Commit staged changes before pulling', operation='pull')

        _phase('pull', SyncPhase.FETCHING)
        remote_head = remote.fetch(handle, remote_url, credential, **http_options)
        local_head = base.head_or_none(handle)

        _phase('pull', SyncPhase.ANALYZING)
        if remote_head is None:
            merge_class = MergeClass.AHEAD if local_head else MergeClass.UP_TO_DATE
        elif local_head is None:
            merge_class = MergeClass.FAST_FORWARD
        else:
            merge_class = merge.analyze(handle, local_head, remote_head)

        if merge_class in (MergeClass.UP_TO_DATE, MergeClass.AHEAD):
            _phase('pull', SyncPhase.IDLE)
            logger.info('Already up to date')
            return PullResult(merge_class, local_head, [])

        if merge_class is MergeClass.FAST_FORWARD:
            _phase('pull', SyncPhase.FAST_FORWARDING)
            base.reset_to(handle, remote_head)
            _phase('pull', SyncPhase.IDLE)
            logger.info('Fast-forwarded to %s', remote_head)
            return PullResult(merge_class, remote_head, [])

        _phase('pull', SyncPhase.MERGING)
        outcome = merge.merge(handle, local_head, remote_head)

        if outcome.conflicted_paths:
            # The conflicted entries and the merge parent are published together
            data.write_index(handle, Index(entries=outcome.entries, merge_head=remote_head))
            base.checkout(handle, index.entries, outcome.entries)
            _phase('pull', SyncPhase.IDLE)
            logger.info('Merge of %s left %d conflicts', remote_head, len(outcome.conflicted_paths))
            return PullResult(merge_class, local_head, conflicts.list_conflicts(handle))

        _phase('pull', SyncPhase.COMMITTING)
        tree = base.write_tree(handle, outcome.entries)
        head = base.write_commit(handle, tree, [local_head, remote_head], MERGE_MESSAGE,
                                 _identity(handle, identity))
        data.update_ref(handle, 'HEAD', RefValue(symbolic=False, value=head))
        data.write_index(handle, Index(entries=outcome.entries))
        base.checkout(handle, index.entries, outcome.entries)
        _phase('pull', SyncPhase.IDLE)
        logger.info('Merged %s as %s', remote_head, head)
        return PullResult(merge_class, head, [])


def push(handle: data.RepositoryHandle, remote_url: str | None = None, credential: str | None = None,
         **http_options) -> types.OID:
    with handle.lock.write():
        remote_url = _remote_url(handle, remote_url)
        local_head = base.current_head(handle)

        _phase('push', SyncPhase.FETCHING)
        remote_head = remote.fetch(handle, remote_url, credential, **http_options)

        if remote_head is not None:
            _phase('push', SyncPhase.ANALYZING)
            merge_class = merge.analyze(handle, local_head, remote_head)
            if merge_class is MergeClass.UP_TO_DATE:
                _phase('push', SyncPhase.IDLE)
                return local_head
            if merge_class is not MergeClass.AHEAD:
                logger.warning('Push rejected, remote is %s', merge_class.value)
                raise NonFastForwardError('Remote has changes that are not in the local history, pull first',
                                          operation='push')

    # remote.push takes the local lock itself and lets go of it while the remote branch moves
    _phase('push', SyncPhase.PUSHING)
    remote.push(handle, remote_url, credential, local_head, **http_options)
    _phase('push', SyncPhase.IDLE)
    logger.info('Pushed %s', local_head)
    return local_head


def resolve_conflict(handle: data.RepositoryHandle, path: types.Path, resolution: Resolution | str,
                     content: str | bytes | None = None) -> list[ConflictEntry]:
    """
    Replace the conflicted entry for `path` with a single resolved version.

    Returns the conflicts that remain; the merge can be committed once none do.
    """
    try:
        resolution = Resolution(resolution)
    except ValueError as e:
        raise ResolutionError(f'Unknown resolution {resolution!r}', operation='resolve') from e
    with handle.lock.write():
        index = data.read_index(handle)
        entry = index.entries.get(path)
        if not isinstance(entry, ConflictStages):
            raise NotFoundError(f'{path} is not conflicted', operation='resolve')

        if resolution is Resolution.USE_LOCAL:
            oid = entry.ours
        elif resolution is Resolution.USE_REMOTE:
            oid = entry.theirs
        else:
            if content is None:
                raise ResolutionError('Resolving with merged content requires the content', operation='resolve')
            if isinstance(content, str):
                content = content.encode()
            oid = data.hash_object(handle, content)

        # paths this one shares a file/directory name with
        related = {p for p in index.entries
                   if p == path or p in diff.parent_dirs(path) or path in diff.parent_dirs(p)}
        if oid is not None:
            clashing = sorted(p for p in related - {path} if not isinstance(index.entries[p], ConflictStages))
            if clashing:
                raise ResolutionError(f'Cannot keep {path} as a file next to {clashing[0]}', operation='resolve')

        entries = dict(index.entries)
        if oid is None:
            del entries[path]
        else:
            entries[path] = oid
        data.write_index(handle, index._replace(entries=entries))
        base.checkout(handle, {p: index.entries[p] for p in related},
                      {p: entries[p] for p in related if p in entries})
        logger.debug('Resolved %s with %s', path, resolution.value)
        return list_conflicts(handle)
