"""
Fetching from and pushing to a remote repository.

Two transports are supported, chosen from the remote URL:

- a local path or ``file://`` URL naming another gimark repository;
- an ``http(s)://`` URL serving the remote repository directory as plain
  files (``refs/heads/<branch>``, ``objects/<oid>``) that accepts ``PUT`` for
  uploads and honours ``If-Match`` (against the ``ETag`` it sent for the
  branch) and ``If-None-Match`` on branch updates.

Objects are transferred in dependency order (an object only after everything
it references) so that an interrupted transfer never leaves a commit without
its history on either side. The remote branch is moved last, with a
compare-and-swap against the tip that was read at the start.

The credential is only ever handed to the HTTP client for the duration of one
call. It is not logged and not stored.
"""

import hashlib
import logging
from contextlib import contextmanager
from typing import Callable, Iterator
from urllib.parse import urlparse, unquote

import httpx

from . import base, data
from . import types
from .errors import NonFastForwardError, StorageError, TransportError
from .types import RefValue

logger = logging.getLogger(__name__)

REMOTE_REFS_BASE = 'refs/heads'
LOCAL_REFS_BASE = 'refs/remote'
OAUTH_USERNAME = 'x-oauth-basic'


class Transport:
    """Access to the objects and branch refs of a remote repository."""

    def get_ref(self, branch: str) -> types.OID | None:
        raise NotImplementedError

    def has_object(self, oid: types.OID) -> bool:
        raise NotImplementedError

    def get_object(self, oid: types.OID) -> bytes:
        raise NotImplementedError

    def put_object(self, oid: types.OID, obj: bytes) -> None:
        raise NotImplementedError

    def update_ref(self, branch: str, old: types.OID | None, new: types.OID) -> None:
        """Move `branch` to `new` if it still points at `old`, else raise NonFastForwardError."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalTransport(Transport):

    def __init__(self, path: str, operation: str):
        try:
            self._repo = data.open_repository(path)
        except StorageError as e:
            raise TransportError(f'Remote {path} is not a repository', operation=operation) from e

    def get_ref(self, branch):
        return data.get_ref(self._repo, f'{REMOTE_REFS_BASE}/{branch}').value

    def has_object(self, oid):
        return data.object_exists(self._repo, oid)

    def get_object(self, oid):
        return data.get_raw_object(self._repo, oid)

    def put_object(self, oid, obj):
        data.put_raw_object(self._repo, oid, obj)

    def update_ref(self, branch, old, new):
        ref = f'{REMOTE_REFS_BASE}/{branch}'
        with self._repo.lock.write():
            current = data.get_ref(self._repo, ref).value
            if current != old:
                raise NonFastForwardError(f'Remote {branch} moved to {current}', operation='push')
            data.update_ref(self._repo, ref, RefValue(symbolic=False, value=new))


class HttpTransport(Transport):

    def __init__(self, url: str, credential: str | None, operation: str,
                 transport: httpx.BaseTransport | None = None, timeout: float | None = None):
        self._operation = operation
        # branch -> (oid, ETag) as last read, for conditional updates
        self._etags = {}
        self._client = httpx.Client(
            base_url=url.rstrip('/') + '/',
            auth=(OAUTH_USERNAME, credential) if credential else None,
            transport=transport,
            timeout=timeout,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise TransportError(f'{method} {path} failed', operation=self._operation, cause=str(e)) from e

    def _check(self, response: httpx.Response) -> httpx.Response:
        if response.status_code in (401, 403):
            raise TransportError('Authentication with the remote failed', operation=self._operation,
                                 status=response.status_code, reason=response.reason_phrase)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(f'{e.request.method} {e.request.url.path} failed', operation=self._operation,
                                 status=response.status_code, reason=response.reason_phrase) from e
        return response

    def get_ref(self, branch):
        response = self._request('GET', f'{REMOTE_REFS_BASE}/{branch}')
        if response.status_code == 404:
            self._etags.pop(branch, None)
            return None
        oid = self._check(response).text.strip() or None
        self._etags[branch] = (oid, response.headers.get('ETag'))
        return oid

    def has_object(self, oid):
        response = self._request('HEAD', f'objects/{oid}')
        if response.status_code == 404:
            return False
        self._check(response)
        return True

    def get_object(self, oid):
        return self._check(self._request('GET', f'objects/{oid}')).content

    def put_object(self, oid, obj):
        self._check(self._request('PUT', f'objects/{oid}', content=obj))

    def update_ref(self, branch, old, new):
        if old is None:
            headers = {'If-None-Match': '*'}
        else:
            seen, _ = self._etags.get(branch, (None, None))
            if seen != old and self.get_ref(branch) != old:
                raise NonFastForwardError(f'Remote {branch} moved while pushing', operation='push')
            _, etag = self._etags[branch]
            if etag is None:
                raise TransportError(f'Remote sends no ETag for {branch}, cannot update it safely',
                                     operation=self._operation)
            headers = {'If-Match': etag}
        response = self._request('PUT', f'{REMOTE_REFS_BASE}/{branch}', content=new.encode(), headers=headers)
        if response.status_code == 412:
            raise NonFastForwardError(f'Remote {branch} moved while pushing', operation='push')
        self._check(response)
        self._etags.pop(branch, None)

    def close(self):
        self._client.close()


@contextmanager
def open_transport(remote_url: str, credential: str | None, operation: str, **http_options) -> Iterator[Transport]:
    parsed = urlparse(remote_url)
    if parsed.scheme in ('http', 'https'):
        transport = HttpTransport(remote_url, credential, operation, **http_options)
    elif parsed.scheme == 'file':
        transport = LocalTransport(unquote(parsed.path), operation)
    elif not parsed.scheme:
        transport = LocalTransport(remote_url, operation)
    else:
        raise TransportError(f'Unsupported remote URL scheme {parsed.scheme!r}', operation=operation)
    try:
        yield transport
    finally:
        transport.close()


def _collect_missing(tip: types.OID, have: Callable[[types.OID], bool],
                     get: Callable[[types.OID], bytes], operation: str) -> list[tuple[types.OID, bytes]]:
    """Objects reachable from `tip` that `have` lacks, each listed after everything it references."""
    objects = {}
    order = []
    stack = [(tip, False)]
    while stack:
        oid, expanded = stack.pop()
        if expanded:
            order.append(oid)
            continue
        if oid in objects or have(oid):
            continue
        obj = get(oid)
        if hashlib.sha1(obj).hexdigest() != oid:
            raise TransportError(f'Object {oid} is corrupt', operation=operation)
        objects[oid] = obj
        stack.append((oid, True))
        stack.extend((ref, False) for ref in reversed(base.object_references(obj)))
    return [(oid, objects[oid]) for oid in order]

def fetch(handle: data.RepositoryHandle, remote_url: str, credential: str | None,
          **http_options) -> types.OID | None:
    with handle.lock.write(), open_transport(remote_url, credential, 'fetch', **http_options) as remote:
        branch = base.branch_name(handle)
        tip = remote.get_ref(branch)
        if tip is None:
            logger.debug('Remote has no %s branch yet', branch)
            return None

        missing = _collect_missing(tip, lambda oid: data.object_exists(handle, oid), remote.get_object, 'fetch')
        for oid, obj in missing:
            data.put_raw_object(handle, oid, obj)
        data.update_ref(handle, f'{LOCAL_REFS_BASE}/{branch}', RefValue(symbolic=False, value=tip))
        logger.debug('Fetched %s (%d new objects)', tip, len(missing))
        return tip


def push(handle: data.RepositoryHandle, remote_url: str, credential: str | None,
         local_head: types.OID, **http_options) -> None:
    """
    Upload the history of `local_head` and move the remote branch to it.

    The local lock is not held while the remote branch is compared and
    swapped, so two repositories pushing to each other never wait on each
    other's lock.
    """
    with open_transport(remote_url, credential, 'push', **http_options) as remote:
        with handle.lock.write():
            branch = base.branch_name(handle)
            tip = remote.get_ref(branch)
            if tip == local_head:
                return
            if tip is not None and not base.is_ancestor_of(handle, local_head, tip):
                logger.warning('Push of %s rejected, remote %s is at %s', local_head, branch, tip)
                raise NonFastForwardError(f'Remote {branch} has diverged, pull first', operation='push')

            missing = _collect_missing(local_head, remote.has_object,
                                       lambda oid: data.get_raw_object(handle, oid), 'push')
            for oid, obj in missing:
                remote.put_object(oid, obj)

        remote.update_ref(branch, tip, local_head)

        with handle.lock.write():
            data.update_ref(handle, f'{LOCAL_REFS_BASE}/{branch}', RefValue(symbolic=False, value=local_head))
        logger.debug('Pushed %s to %s (%d objects)', local_head, branch, len(missing))
