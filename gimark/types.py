import enum
from typing import TypeAlias, NamedTuple, Literal, Optional

Path: TypeAlias = str  # a path relative to the working tree, '/' separated
OID: TypeAlias = str  # hash
TreeMap: TypeAlias = dict[Path, OID]
ObjectType: TypeAlias = Literal['blob', 'tree', 'commit']


class Identity(NamedTuple):
    name: str
    email: str


class Signature(NamedTuple):
    identity: Identity
    timestamp: int
    offset: str  # +hhmm


class Commit(NamedTuple):
    tree: OID
    parents: list[OID]
    author: Signature
    committer: Signature
    message: str


class RefValue(NamedTuple):
    symbolic: bool
    value: Optional[OID]


class ConflictStages(NamedTuple):
    base: Optional[OID]
    ours: Optional[OID]
    theirs: Optional[OID]


# A clean index entry is a blob oid, a conflicted one holds every stage
IndexEntry: TypeAlias = OID | ConflictStages


class Index(NamedTuple):
    entries: dict[Path, IndexEntry]
    merge_head: Optional[OID] = None

    @property
    def conflicted(self) -> bool:
        return any(isinstance(entry, ConflictStages) for entry in self.entries.values())


class MergeClass(str, enum.Enum):
    UP_TO_DATE = 'up_to_date'
    FAST_FORWARD = 'fast_forward'
    AHEAD = 'ahead'
    DIVERGENT = 'divergent'


class MergeOutcome(NamedTuple):
    base: OID
    local: OID
    remote: OID
    entries: dict[Path, IndexEntry]
    conflicted_paths: list[Path]


class ConflictEntry(NamedTuple):
    path: Path
    base: Optional[OID]
    ours: Optional[OID]
    theirs: Optional[OID]

    @property
    def has_base(self) -> bool:
        return self.base is not None

    @property
    def has_local(self) -> bool:
        return self.ours is not None

    @property
    def has_remote(self) -> bool:
        return self.theirs is not None


class Resolution(str, enum.Enum):
    USE_LOCAL = 'keep_mine'
    USE_REMOTE = 'use_theirs'
    USE_CONTENT = 'merge'


class SyncPhase(str, enum.Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    ANALYZING = 'analyzing'
    FAST_FORWARDING = 'fast_forwarding'
    MERGING = 'merging'
    PUSHING = 'pushing'
    COMMITTING = 'committing'


class PullResult(NamedTuple):
    merge_class: MergeClass
    head: Optional[OID]
    conflicts: list[ConflictEntry]
