import threading
from contextlib import contextmanager


class RWLock:
    """
    Reader/writer lock shared by every handle on the same repository.

    Any number of readers may hold the lock together, a writer holds it alone.
    The thread owning the write lock may take it again, as a reader or a
    writer, so a sync verb can call the read-only accessors it is built from.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = None
        self._writer_depth = 0

    def _owned(self):
        return self._writer == threading.get_ident()

    @contextmanager
    def read(self):
        with self._cond:
            if self._owned():
                self._writer_depth += 1
                reentrant = True
            else:
                while self._writer is not None:
                    self._cond.wait()
                self._readers += 1
                reentrant = False
        try:
            yield
        finally:
            with self._cond:
                if reentrant:
                    self._writer_depth -= 1
                else:
                    self._readers -= 1
                    if not self._readers:
                        self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            if self._owned():
                self._writer_depth += 1
            else:
                while self._writer is not None or self._readers:
                    self._cond.wait()
                self._writer = threading.get_ident()
                self._writer_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._writer_depth -= 1
                if not self._writer_depth:
                    self._writer = None
                    self._cond.notify_all()
