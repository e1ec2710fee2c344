"""
Pytest configuration and shared fixtures.

Provides repositories (a standalone one, a shared remote and clones of it)
and helpers for writing, staging and committing files.
"""

import os

import pytest

from gimark import base, data, sync
from gimark.types import Identity, Index

IDENTITY = Identity("Test User", "test@example.com")


# ==============================================================================
# Repository Fixtures
# ==============================================================================


@pytest.fixture
def identity():
    return IDENTITY


@pytest.fixture
def repo(tmp_path):
    """An empty local repository."""
    return data.open_or_init(str(tmp_path / "repo"))


@pytest.fixture
def remote_repo(tmp_path):
    """An empty repository used as the remote by clones."""
    return data.open_or_init(str(tmp_path / "remote"))


@pytest.fixture
def make_clone(tmp_path, remote_repo):
    """Clone the shared remote into a fresh directory."""

    def _make_clone(name):
        return sync.clone(remote_repo.work_dir, str(tmp_path / name), None)

    return _make_clone


# ==============================================================================
# File Helpers
# ==============================================================================


def _write(handle, path, content):
    full = os.path.join(handle.work_dir, path)
    os.makedirs(os.path.dirname(full), exist_ok=True)
    with open(full, "w") as f:
        f.write(content)


def _read(handle, path):
    with open(os.path.join(handle.work_dir, path)) as f:
        return f.read()


@pytest.fixture
def write_file():
    return _write


@pytest.fixture
def read_file():
    return _read


@pytest.fixture
def commit_file():
    """Write, stage and commit one file; returns the new commit id."""

    def _commit_file(handle, path, content, message=None, when=None):
        _write(handle, path, content)
        sync.stage(handle, [path])
        return sync.commit(handle, message or f"Update {path}", IDENTITY, when=when)

    return _commit_file


@pytest.fixture
def make_merge():
    """Create a merge commit of `theirs` into `ours` taking the union of both trees."""

    def _make_merge(handle, ours, theirs, message):
        base.reset_to(handle, ours)
        entries = base.get_commit_tree(handle, ours) | base.get_commit_tree(handle, theirs)
        data.write_index(handle, Index(entries=entries, merge_head=theirs))
        return base.commit(handle, message, IDENTITY)

    return _make_merge
