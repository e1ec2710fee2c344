import itertools
import logging
import operator
import os
import re
import time
from collections import deque
from typing import Iterable

from . import data, diff
from . import types
from .errors import (ConflictedIndexError, EmptyRepositoryError, NotFoundError,
                     NothingToCommitError, StorageError)
from .types import ConflictStages, Index, RefValue

logger = logging.getLogger(__name__)

_SIGNATURE_RE = re.compile(r'^(?P<name>.*) <(?P<email>[^>]*)> (?P<timestamp>\d+) (?P<offset>[+-]\d{4})$')


def parse_commit(content: bytes) -> types.Commit:
    parents = []
    tree = author = committer = None
    lines = iter(content.decode().splitlines())
    for line in itertools.takewhile(operator.truth,
                                    lines):  # an empty line separates the headers from the message
        key, value = line.split(' ', 1)
        if key == 'tree':
            tree = value
        elif key == 'parent':
            parents.append(value)
        elif key == 'author':
            author = _parse_signature(value)
        elif key == 'committer':
            committer = _parse_signature(value)
        else:
            raise StorageError(f'Unknown commit field {key}', operation='read-commit')

    if tree is None or author is None or committer is None:
        raise StorageError('Commit is missing a tree or a signature', operation='read-commit')
    message = '\n'.join(lines)
    return types.Commit(tree=tree, parents=parents, author=author, committer=committer, message=message)


def _parse_signature(value: str) -> types.Signature:
    match = _SIGNATURE_RE.match(value)
    if not match:
        raise StorageError(f'Malformed signature {value!r}', operation='read-commit')
    return types.Signature(
        identity=types.Identity(match['name'], match['email']),
        timestamp=int(match['timestamp']),
        offset=match['offset'],
    )


def _format_signature(signature: types.Signature) -> str:
    name, email = signature.identity
    return f'{name} <{email}> {signature.timestamp} {signature.offset}'


def _signature_now(identity: types.Identity, when: int | None) -> types.Signature:
    when = int(time.time()) if when is None else when
    gmtoff = time.localtime(when).tm_gmtoff
    sign = '+' if gmtoff >= 0 else '-'
    gmtoff = abs(gmtoff)
    return types.Signature(identity, when, f'{sign}{gmtoff // 3600:02}{gmtoff % 3600 // 60:02}')


def get_commit(handle: data.RepositoryHandle, oid: types.OID) -> types.Commit:
    return parse_commit(data.get_object(handle, oid, 'commit'))


def parse_tree(content: bytes) -> Iterable[tuple[types.ObjectType, types.OID, str]]:
    for entry in content.decode().splitlines():
        type_, oid, name = entry.split(' ', 2)
        yield type_, oid, name


def object_references(obj: bytes) -> list[types.OID]:
    """Ids of the objects a raw stored object points at."""
    type_, _, content = obj.partition(b'\x00')
    if type_ == b'commit':
        commit_ = parse_commit(content)
        return [commit_.tree, *commit_.parents]
    if type_ == b'tree':
        return [oid for _, oid, _ in parse_tree(content)]
    if type_ == b'blob':
        return []
    raise StorageError(f'Unknown object type {type_!r}', operation='read')


def write_tree(handle: data.RepositoryHandle, entries: dict[types.Path, types.IndexEntry]) -> types.OID:
    for path, oid in sorted(entries.items()):
        if isinstance(oid, ConflictStages):
            raise ConflictedIndexError(f'{path} has unresolved conflicts', operation='write-tree')
    collisions = diff.file_directory_collisions(entries)
    if collisions:
        raise ConflictedIndexError(f'{min(collisions)} is both a file and a directory', operation='write-tree')

    index_as_tree = {}
    for path, oid in entries.items():
        path = path.split('/')
        dirpath, filename = path[:-1], path[-1]
        current = index_as_tree
        # Find the dict for the directory of this file
        for dirname in dirpath:
            current = current.setdefault(dirname, {})
        current[filename] = oid

    def write_tree_recursive(tree_dict):
        entries_ = []
        for name, value in tree_dict.items():
            if type(value) is dict:
                type_ = 'tree'
                oid_ = write_tree_recursive(value)
            else:
                type_ = 'blob'
                oid_ = value
            entries_.append((name, oid_, type_))

        tree = ''.join(f'{type_} {oid_} {name}\n'
                       for name, oid_, type_
                       in sorted(entries_))
        return data.hash_object(handle, tree.encode(), 'tree')

    return write_tree_recursive(index_as_tree)


def get_tree(handle: data.RepositoryHandle, oid: types.OID, base_path: types.Path = '') -> types.TreeMap:
    result = {}
    for type_, oid_, name in parse_tree(data.get_object(handle, oid, 'tree')):
        if '/' in name or name in ('..', '.'):
            raise StorageError(f'Invalid tree entry {name!r} in {oid}', operation='read-tree')
        path = base_path + name
        if type_ == 'blob':
            result[path] = oid_
        elif type_ == 'tree':
            result.update(get_tree(handle, oid_, f'{path}/'))
        else:
            raise StorageError(f'Unknown tree entry {type_}', operation='read-tree')
    return result


def get_commit_tree(handle: data.RepositoryHandle, oid: types.OID | None) -> types.TreeMap:
    if oid is None:
        return {}
    return get_tree(handle, get_commit(handle, oid).tree)


def head_or_none(handle: data.RepositoryHandle) -> types.OID | None:
    return data.get_ref(handle, 'HEAD').value


def current_head(handle: data.RepositoryHandle) -> types.OID:
    with handle.lock.read():
        head = head_or_none(handle)
    if head is None:
        raise EmptyRepositoryError('Repository has no commits yet', operation='current-head')
    return head


def branch_name(handle: data.RepositoryHandle) -> str:
    HEAD = data.get_ref(handle, 'HEAD', deref=False)
    if not HEAD.symbolic:
        raise StorageError('HEAD is detached', operation='branch-name')
    return os.path.relpath(HEAD.value, 'refs/heads').replace('\\', '/')


def pending_merge_head(handle: data.RepositoryHandle, index: Index) -> types.OID | None:
    """The merge parent the next commit will record, if a merge is in progress."""
    HEAD = head_or_none(handle)
    # already in the history: the merge was committed but the index not yet cleared
    if index.merge_head and HEAD and is_ancestor_of(handle, HEAD, index.merge_head):
        return None
    return index.merge_head


def has_staged_changes(handle: data.RepositoryHandle) -> bool:
    index = data.read_index(handle)
    return (pending_merge_head(handle, index) is not None
            or index.entries != get_commit_tree(handle, head_or_none(handle)))


def write_commit(handle: data.RepositoryHandle, tree: types.OID, parents: list[types.OID], message: str,
                 identity: types.Identity, when: int | None = None) -> types.OID:
    signature = _signature_now(identity, when)
    commit_ = f'tree {tree}\n'
    for parent in parents:
        commit_ += f'parent {parent}\n'
    commit_ += f'author {_format_signature(signature)}\n'
    commit_ += f'committer {_format_signature(signature)}\n'
    commit_ += '\n'
    commit_ += f'{message}\n'
    return data.hash_object(handle, commit_.encode(), 'commit')


def commit(handle: data.RepositoryHandle, message: str, identity: types.Identity,
           when: int | None = None) -> types.OID:
    with handle.lock.write():
        index = data.read_index(handle)
        if index.conflicted:
            raise ConflictedIndexError('Cannot commit with unresolved conflicts', operation='commit')

        tree = write_tree(handle, index.entries)
        HEAD = head_or_none(handle)
        merge_head = pending_merge_head(handle, index)
        if merge_head is None:
            if HEAD is None and not index.entries:
                raise NothingToCommitError('Nothing staged for the first commit', operation='commit')
            if HEAD is not None and get_commit(handle, HEAD).tree == tree:
                raise NothingToCommitError('Index matches HEAD, nothing to commit', operation='commit')

        parents = [oid for oid in (HEAD, merge_head) if oid]
        oid = write_commit(handle, tree, parents, message, identity, when)
        # merge_head stays in the index until the branch has moved
        data.update_ref(handle, 'HEAD', RefValue(symbolic=False, value=oid))
        data.write_index(handle, Index(entries=dict(index.entries)))
        logger.debug('Committed %s on %s', oid, branch_name(handle))
        return oid


def iter_commits_and_parents(handle: data.RepositoryHandle, oids: Iterable[types.OID]) -> Iterable[types.OID]:
    oids = deque(oids)
    visited = set()

    while oids:
        oid = oids.popleft()
        if not oid or oid in visited:
            continue
        visited.add(oid)
        yield oid

        commit_ = get_commit(handle, oid)
        oids.extendleft(commit_.parents[:1])
        oids.extend(commit_.parents[1:])


def is_ancestor_of(handle: data.RepositoryHandle, commit_: types.OID, maybe_ancestor: types.OID) -> bool:
    if not data.object_exists(handle, maybe_ancestor):
        return False
    return maybe_ancestor in iter_commits_and_parents(handle, {commit_})


def _full_path(handle: data.RepositoryHandle, name: str) -> tuple[str, types.Path]:
    full = os.path.normpath(os.path.join(handle.work_dir, name))
    path = os.path.relpath(full, handle.work_dir).replace('\\', '/')
    if path == '..' or path.startswith('../'):
        raise StorageError(f'{name} is outside the repository', operation='stage')
    return full, path


def stage(handle: data.RepositoryHandle, paths: Iterable[str]) -> None:
    def add_file(full, path):
        with open(full, 'rb') as f:
            oid = data.hash_object(handle, f.read())
        index[path] = oid

    def add_directory(dirname):
        for root, _, filenames_inner in os.walk(dirname):
            for filename_inner in filenames_inner:
                full, path = _full_path(handle, os.path.join(root, filename_inner))
                if is_ignored(path) or not os.path.isfile(full):
                    continue
                add_file(full, path)

    with handle.lock.write(), data.get_index(handle) as index:
        for name in paths:
            full, path = _full_path(handle, name)
            if is_ignored(path):
                continue
            if os.path.isfile(full):
                add_file(full, path)
            elif os.path.isdir(full):
                add_directory(full)
            else:
                raise NotFoundError(f'{name} does not exist', operation='stage')


def unstage(handle: data.RepositoryHandle, paths: Iterable[str]) -> None:
    with handle.lock.write(), data.get_index(handle) as index:
        for name in paths:
            _, path = _full_path(handle, name)
            tracked = [p for p in index if p == path or p.startswith(f'{path}/')]
            if not tracked:
                raise NotFoundError(f'{name} is not tracked', operation='unstage')
            for p in tracked:
                del index[p]


def checkout(handle: data.RepositoryHandle,
             old: dict[types.Path, types.IndexEntry],
             new: dict[types.Path, types.IndexEntry]) -> None:
    """
    Bring the working files from the `old` index entries to the `new` ones.

    A path that is also the directory of another new entry only exists in the
    index; the directory takes its place in the working tree.
    """
    shadowed = diff.file_directory_collisions(new)
    try:
        for path in sorted((old.keys() - new.keys()) | shadowed):
            full = os.path.join(handle.work_dir, path)
            if os.path.isfile(full):
                os.remove(full)
            _prune_empty_dirs(handle, os.path.dirname(full))

        for path, entry in sorted(new.items()):
            full = os.path.join(handle.work_dir, path)
            if path in shadowed or (old.get(path) == entry and os.path.isfile(full)):
                continue
            if isinstance(entry, ConflictStages):
                content = diff.conflict_markers(handle, entry.ours, entry.theirs)
            else:
                content = data.get_object(handle, entry)
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, 'wb') as f:
                f.write(content)
    except OSError as e:
        raise StorageError('Cannot update the working files', operation='checkout', cause=str(e)) from e


def _prune_empty_dirs(handle: data.RepositoryHandle, dirname: str) -> None:
    while os.path.normpath(dirname) != os.path.normpath(handle.work_dir):
        try:
            os.rmdir(dirname)
        except OSError:
            return  # not empty
        dirname = os.path.dirname(dirname)


def reset_to(handle: data.RepositoryHandle, oid: types.OID) -> None:
    """Point the branch at `oid` and make the index and working files match its tree."""
    index = data.read_index(handle)
    tree = get_commit_tree(handle, oid)
    data.update_ref(handle, 'HEAD', RefValue(symbolic=False, value=oid))
    data.write_index(handle, Index(entries=tree))
    checkout(handle, index.entries, tree)


def is_ignored(path: types.Path) -> bool:
    parts = path.replace('\\', '/').split('/')
    return data.GIT_DIR in parts or '__pycache__' in parts
