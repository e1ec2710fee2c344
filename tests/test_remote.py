"""
Tests for fetching and pushing over the local and HTTP transports.
"""

import base64
import hashlib
import threading

import httpx
import pytest

from gimark import base, data, remote, sync
from gimark.errors import NonFastForwardError, TransportError
from gimark.types import RefValue

TOKEN = "secret-token"
URL = "http://remote.test/notes/"


def _etag(content):
    return '"' + hashlib.md5(content.encode()).hexdigest() + '"'


def _http_remote(repo, seen=None, token=TOKEN, corrupt=False, reject_ref_update=False, etags=True):
    """Serve `repo` the way a static file server with PUT support would."""
    expected = "Basic " + base64.b64encode(f"x-oauth-basic:{token}".encode()).decode()

    def handler(request):
        if seen is not None:
            seen.append(request)
        if request.headers.get("Authorization") != expected:
            return httpx.Response(401)
        path = request.url.path.removeprefix("/notes/")

        if path.startswith("objects/"):
            oid = path.split("/", 1)[1]
            if request.method == "PUT":
                data.put_raw_object(repo, oid, request.content)
                return httpx.Response(201)
            if not data.object_exists(repo, oid):
                return httpx.Response(404)
            content = data.get_raw_object(repo, oid)
            if corrupt:
                content += b"!"
            return httpx.Response(200, content=content if request.method == "GET" else b"")

        if path.startswith("refs/heads/"):
            current = data.get_ref(repo, path).value
            if request.method == "GET":
                if not current:
                    return httpx.Response(404)
                return httpx.Response(200, text=current, headers={"ETag": _etag(current)} if etags else {})
            if request.method == "PUT":
                if reject_ref_update:
                    return httpx.Response(412)
                if "If-None-Match" in request.headers and current is not None:
                    return httpx.Response(412)
                if "If-Match" in request.headers:
                    if current is None or request.headers["If-Match"] != _etag(current):
                        return httpx.Response(412)
                data.update_ref(repo, path, RefValue(symbolic=False, value=request.content.decode()))
                return httpx.Response(204)

        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def published(make_clone, commit_file):
    """A clone whose first commit has been pushed to the remote."""
    writer = make_clone("writer")
    head = commit_file(writer, "a.txt", "1")
    sync.push(writer)
    return writer, head


def _tracking(handle):
    return data.get_ref(handle, "refs/remote/main").value


class TestFetch:
    """Tests for downloading remote history."""

    def test_empty_remote(self, repo, remote_repo):
        assert remote.fetch(repo, remote_repo.work_dir, None) is None
        assert _tracking(repo) is None

    def test_downloads_history_and_tracks_tip(self, repo, remote_repo, published):
        _, head = published

        tip = remote.fetch(repo, remote_repo.work_dir, None)

        assert tip == head
        assert _tracking(repo) == head
        assert base.get_commit_tree(repo, head).keys() == {"a.txt"}
        assert base.head_or_none(repo) is None

    def test_repeated_fetch_writes_nothing(self, repo, remote_repo, published, monkeypatch):
        first = remote.fetch(repo, remote_repo.work_dir, None)
        writes = []
        monkeypatch.setattr(data, "put_raw_object", lambda *args: writes.append(args))

        second = remote.fetch(repo, remote_repo.work_dir, None)

        assert second == first
        assert writes == []

    def test_file_url(self, repo, remote_repo, published):
        _, head = published

        assert remote.fetch(repo, f"file://{remote_repo.work_dir}", None) == head

    def test_remote_is_not_a_repository(self, repo, tmp_path):
        (tmp_path / "plain").mkdir()

        with pytest.raises(TransportError):
            remote.fetch(repo, str(tmp_path / "plain"), None)

    def test_unsupported_scheme(self, repo):
        with pytest.raises(TransportError):
            remote.fetch(repo, "ssh://example.com/notes", None)


class TestPush:
    """Tests for uploading local history."""

    def test_push_to_empty_remote(self, repo, remote_repo, commit_file):
        head = commit_file(repo, "a.txt", "1")

        remote.push(repo, remote_repo.work_dir, None, head)

        assert data.get_ref(remote_repo, "refs/heads/main").value == head
        assert _tracking(repo) == head

    def test_rejects_diverged_remote(self, make_clone, remote_repo, published, commit_file):
        writer, _ = published
        other = make_clone("other")
        commit_file(writer, "a.txt", "2")
        sync.push(writer)
        remote_tip = data.get_ref(remote_repo, "refs/heads/main").value
        local_head = commit_file(other, "b.txt", "x")

        with pytest.raises(NonFastForwardError):
            remote.push(other, remote_repo.work_dir, None, local_head)

        assert data.get_ref(remote_repo, "refs/heads/main").value == remote_tip

    def test_branch_update_is_compare_and_swap(self, remote_repo, published):
        _, head = published

        with remote.open_transport(remote_repo.work_dir, None, "push") as transport:
            with pytest.raises(NonFastForwardError):
                transport.update_ref("main", None, head)

    def test_remote_branch_moves_without_local_lock(self, repo, remote_repo, commit_file, monkeypatch):
        head = commit_file(repo, "a.txt", "1")
        update_ref = remote.LocalTransport.update_ref
        acquired = threading.Event()

        def update_ref_while_locking(transport, branch, old, new):
            def writer():
                with repo.lock.write():
                    acquired.set()

            thread = threading.Thread(target=writer, daemon=True)
            thread.start()
            thread.join(5)
            update_ref(transport, branch, old, new)

        monkeypatch.setattr(remote.LocalTransport, "update_ref", update_ref_while_locking)

        sync.push(repo, remote_repo.work_dir)

        assert acquired.is_set()
        assert data.get_ref(remote_repo, "refs/heads/main").value == head


class TestHttpTransport:
    """Tests for the HTTP transport against a mocked server."""

    def test_clone_push_and_fetch(self, tmp_path, remote_repo, published, commit_file):
        _, head = published
        seen = []
        mock = _http_remote(remote_repo, seen)

        clone = sync.clone(URL, str(tmp_path / "http-clone"), TOKEN, transport=mock)
        assert sync.current_head(clone) == head

        new_head = commit_file(clone, "b.txt", "x")
        sync.push(clone, credential=TOKEN, transport=mock)

        assert data.get_ref(remote_repo, "refs/heads/main").value == new_head
        ref_update = next(r for r in seen if r.method == "PUT" and r.url.path.endswith("refs/heads/main"))
        assert ref_update.headers["If-Match"] == _etag(head)
        assert remote.fetch(clone, URL, TOKEN, transport=mock) == new_head
        assert seen and all(request.headers["Authorization"].startswith("Basic ") for request in seen)

    def test_credential_is_not_kept(self, tmp_path, remote_repo, published):
        clone = sync.clone(URL, str(tmp_path / "http-clone"), TOKEN, transport=_http_remote(remote_repo))

        with open(f"{clone.git_dir}/config.json") as f:
            assert TOKEN not in f.read()

    def test_bad_credential(self, repo, remote_repo, published):
        with pytest.raises(TransportError) as excinfo:
            remote.fetch(repo, URL, "wrong", transport=_http_remote(remote_repo))

        assert excinfo.value.status == 401
        assert _tracking(repo) is None

    def test_network_failure(self, repo):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError) as excinfo:
            remote.fetch(repo, URL, TOKEN, transport=httpx.MockTransport(handler))

        assert "connection refused" in str(excinfo.value)

    def test_corrupt_object_is_refused(self, repo, remote_repo, published):
        with pytest.raises(TransportError):
            remote.fetch(repo, URL, TOKEN, transport=_http_remote(remote_repo, corrupt=True))

        assert _tracking(repo) is None

    def test_rejected_ref_update(self, repo, remote_repo, commit_file):
        head = commit_file(repo, "a.txt", "1")

        with pytest.raises(NonFastForwardError):
            remote.push(repo, URL, TOKEN, head, transport=_http_remote(remote_repo, reject_ref_update=True))

        assert data.get_ref(remote_repo, "refs/heads/main").value is None
        assert data.object_exists(remote_repo, head)

    def test_branch_update_needs_an_entity_tag(self, repo, remote_repo, published, commit_file):
        remote_tip = data.get_ref(remote_repo, "refs/heads/main").value
        remote.fetch(repo, remote_repo.work_dir, None)
        base.reset_to(repo, remote_tip)
        head = commit_file(repo, "b.txt", "x")

        with pytest.raises(TransportError):
            remote.push(repo, URL, TOKEN, head, transport=_http_remote(remote_repo, etags=False))

        assert data.get_ref(remote_repo, "refs/heads/main").value == remote_tip

    def test_uploaded_objects_match_their_ids(self, repo, remote_repo, commit_file):
        head = commit_file(repo, "a.txt", "1")

        remote.push(repo, URL, TOKEN, head, transport=_http_remote(remote_repo))

        for oid in (head, base.get_commit(repo, head).tree):
            assert hashlib.sha1(data.get_raw_object(remote_repo, oid)).hexdigest() == oid
