from . import data
from .types import ConflictEntry, ConflictStages


def list_conflicts(handle: data.RepositoryHandle) -> list[ConflictEntry]:
    with handle.lock.read():
        index = data.read_index(handle)
    return [
        ConflictEntry(path, *entry)
        for path, entry in sorted(index.entries.items())
        if isinstance(entry, ConflictStages)
    ]


def has_conflicts(handle: data.RepositoryHandle) -> bool:
    with handle.lock.read():
        return data.read_index(handle).conflicted
