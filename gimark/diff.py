from collections import defaultdict
from typing import Iterable, Optional
from typing_extensions import Unpack

from . import types
from . import data
from .types import ConflictStages


def compare_trees(*trees: types.TreeMap) -> Iterable[tuple[types.Path, Unpack[tuple[Optional[types.OID], ...]]]]:
    entries = defaultdict(lambda: [None] * len(trees))
    for i, tree in enumerate(trees):
        for path, oid in tree.items():
            entries[path][i] = oid

    for path in sorted(entries):
        yield path, *entries[path]


def parent_dirs(path: types.Path) -> Iterable[types.Path]:
    parts = path.split('/')
    for i in range(1, len(parts)):
        yield '/'.join(parts[:i])


def file_directory_collisions(paths: Iterable[types.Path]) -> set[types.Path]:
    """Paths that name a file and are also the directory of another path."""
    paths = set(paths)
    return paths & {dirname for path in paths for dirname in parent_dirs(path)}


def merge_trees(t_base: types.TreeMap, t_head: types.TreeMap, t_other: types.TreeMap) -> tuple[
        dict[types.Path, types.IndexEntry], list[types.Path]]:
    """
    Three-way merge of whole files.

    A path changed on one side only takes that side (a deletion included), a
    path changed identically on both sides is taken once, and a path changed
    differently on both sides keeps all three versions as a conflict.

    When one side adds a file where the other side has a directory, the file
    and everything below the directory are conflicted, since both cannot be
    part of the same tree.
    """
    tree = {}
    versions = {}
    for path, o_base, o_head, o_other in compare_trees(t_base, t_head, t_other):
        versions[path] = ConflictStages(base=o_base, ours=o_head, theirs=o_other)
        if o_head == o_other:
            merged = o_head
        elif o_head == o_base:
            merged = o_other
        elif o_other == o_base:
            merged = o_head
        else:
            merged = versions[path]
        if merged is not None:
            tree[path] = merged

    collisions = file_directory_collisions(tree)
    for path in tree:
        if path in collisions or any(dirname in collisions for dirname in parent_dirs(path)):
            tree[path] = versions[path]

    conflicts = sorted(path for path, entry in tree.items() if isinstance(entry, ConflictStages))
    return tree, conflicts


def conflict_markers(handle: data.RepositoryHandle, o_head: Optional[types.OID], o_other: Optional[types.OID]) -> bytes:
    sides = []
    for oid in (o_head, o_other):
        content = data.get_object(handle, oid) if oid else b''
        if content and not content.endswith(b'\n'):
            content += b'\n'
        sides.append(content)
    ours, theirs = sides
    return b'<<<<<<< ours\n' + ours + b'=======\n' + theirs + b'>>>>>>> theirs\n'
