import hashlib
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Iterator, NamedTuple

from gimark import types
from gimark.errors import NotFoundError, StorageError
from gimark.locking import RWLock
from gimark.types import ConflictStages, Index, RefValue

logger = logging.getLogger(__name__)

GIT_DIR = '.gimark'
DEFAULT_BRANCH = 'main'
INDEX_FILE = 'index.json'

_locks: dict[str, RWLock] = {}
_locks_guard = threading.Lock()


class RepositoryHandle(NamedTuple):
    work_dir: str
    git_dir: str
    lock: RWLock


def _lock_for(git_dir: str) -> RWLock:
    key = os.path.realpath(git_dir)
    with _locks_guard:
        return _locks.setdefault(key, RWLock())


def _handle(path: str) -> RepositoryHandle:
    git_dir = os.path.join(path, GIT_DIR)
    return RepositoryHandle(work_dir=path, git_dir=git_dir, lock=_lock_for(git_dir))


def open_or_init(path: str) -> RepositoryHandle:
    path = os.path.abspath(path)
    if os.path.exists(path) and not os.path.isdir(path):
        raise StorageError(f'{path} is not a directory', operation='open')
    if os.path.isdir(os.path.join(path, GIT_DIR)):
        return open_repository(path)
    if os.path.isdir(path) and os.listdir(path):
        raise StorageError(f'{path} is not empty and holds no repository', operation='init')
    return init(path)


def init(path: str) -> RepositoryHandle:
    handle = _handle(os.path.abspath(path))
    try:
        os.makedirs(f'{handle.git_dir}/objects', exist_ok=True)
        os.makedirs(f'{handle.git_dir}/refs/heads', exist_ok=True)
    except OSError as e:
        raise StorageError(f'Cannot create repository in {path}', operation='init', cause=str(e)) from e
    # HEAD is written last, a directory without it is not a repository
    update_ref(handle, 'HEAD', RefValue(symbolic=True, value=f'refs/heads/{DEFAULT_BRANCH}'), deref=False)
    logger.debug('Initialized empty repository in %s', handle.git_dir)
    return handle


def open_repository(path: str) -> RepositoryHandle:
    handle = _handle(os.path.abspath(path))
    if not (os.path.isdir(f'{handle.git_dir}/objects') and os.path.isfile(f'{handle.git_dir}/HEAD')):
        raise StorageError(f'{path} is not a valid repository', operation='open')
    return handle


def write_atomic(path: str, content: bytes) -> None:
    directory = os.path.dirname(path)
    try:
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-')
        try:
            with os.fdopen(fd, 'wb') as out:
                out.write(content)
                out.flush()
                os.fsync(out.fileno())
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
    except OSError as e:
        raise StorageError(f'Cannot write {path}', operation='write', cause=str(e)) from e


def hash_object(handle: RepositoryHandle, data: bytes, type_: types.ObjectType = 'blob') -> types.OID:
    obj = type_.encode() + b'\x00' + data
    oid = hashlib.sha1(obj).hexdigest()
    if not object_exists(handle, oid):
        write_atomic(f'{handle.git_dir}/objects/{oid}', obj)
    return oid


def object_exists(handle: RepositoryHandle, oid: types.OID) -> bool:
    return os.path.isfile(f'{handle.git_dir}/objects/{oid}')


def get_raw_object(handle: RepositoryHandle, oid: types.OID) -> bytes:
    try:
        with open(f'{handle.git_dir}/objects/{oid}', 'rb') as f:
            return f.read()
    except FileNotFoundError as e:
        raise NotFoundError(f'Object {oid} not found', operation='read') from e
    except OSError as e:
        raise StorageError(f'Cannot read object {oid}', operation='read', cause=str(e)) from e


def put_raw_object(handle: RepositoryHandle, oid: types.OID, obj: bytes) -> bool:
    """Store an object received from elsewhere; returns False if it was already present."""
    if hashlib.sha1(obj).hexdigest() != oid:
        raise StorageError(f'Object {oid} does not match its content', operation='write')
    if object_exists(handle, oid):
        return False
    write_atomic(f'{handle.git_dir}/objects/{oid}', obj)
    return True


def get_object(handle: RepositoryHandle, oid: types.OID, expected: types.ObjectType | None = 'blob') -> bytes:
    type_, _, content = get_raw_object(handle, oid).partition(b'\x00')
    type_ = type_.decode()
    if expected is not None and type_ != expected:
        raise StorageError(f'Expected {expected} for {oid}, got {type_}', operation='read')
    return content


def update_ref(handle: RepositoryHandle, ref: str, value: RefValue, deref=True) -> None:
    ref = _get_ref_internal(handle, ref, deref)[0]

    assert value.value
    if value.symbolic:
        content = f'ref: {value.value}'
    else:
        if not object_exists(handle, value.value):
            raise StorageError(f'Refusing to point {ref} at missing object {value.value}', operation='update-ref')
        content = value.value
    write_atomic(f'{handle.git_dir}/{ref}', content.encode())


def get_ref(handle: RepositoryHandle, ref: str, deref=True) -> RefValue:
    return _get_ref_internal(handle, ref, deref)[1]


def _get_ref_internal(handle: RepositoryHandle, ref: str, deref: bool) -> tuple[str, RefValue]:
    ref_path = f'{handle.git_dir}/{ref}'
    value = None
    if os.path.isfile(ref_path):
        with open(ref_path) as f:
            value = f.read().strip()

    symbolic = bool(value) and value.startswith('ref:')
    if symbolic:
        value = value.split(':', 1)[1].strip()
        if deref:
            return _get_ref_internal(handle, value, deref=True)
    return ref, RefValue(symbolic=symbolic, value=value)


def read_index(handle: RepositoryHandle) -> Index:
    path = f'{handle.git_dir}/{INDEX_FILE}'
    if not os.path.isfile(path):
        return Index(entries={})
    try:
        with open(path) as f:
            raw = json.load(f)
        entries = {}
        for path_, entry in raw['entries'].items():
            if isinstance(entry, dict):
                entry = ConflictStages(base=entry['base'], ours=entry['ours'], theirs=entry['theirs'])
            entries[path_] = entry
        return Index(entries=entries, merge_head=raw.get('merge_head'))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise StorageError('Index is unreadable', operation='read-index', cause=str(e)) from e


def write_index(handle: RepositoryHandle, index: Index) -> None:
    entries = {}
    for path, entry in sorted(index.entries.items()):
        if isinstance(entry, ConflictStages):
            entry = entry._asdict()
        entries[path] = entry
    raw = {'merge_head': index.merge_head, 'entries': entries}
    write_atomic(f'{handle.git_dir}/{INDEX_FILE}', json.dumps(raw, indent=2).encode())


@contextmanager
def get_index(handle: RepositoryHandle) -> Iterator[dict[types.Path, types.IndexEntry]]:
    """Yield the index entries for editing; they are written back only if the block succeeds."""
    index = read_index(handle)
    entries = dict(index.entries)
    yield entries
    write_index(handle, index._replace(entries=entries))
