#!/usr/bin/env python3
"""
Reader/Writer Lock Module

Many concurrent readers or a single writer. Used to guard in-memory model
structures that are filled by one thread while others snapshot them.
"""

import threading
from contextlib import contextmanager


class ReadWriteLock:
    """
    Writer-preferring reader/writer lock built on a single condition variable.
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self):
        with self._condition:
            while self._writer or self._waiting_writers:
                self._condition.wait()
            self._readers += 1

    def release_read(self):
        with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_write(self):
        with self._condition:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._condition.wait()
            self._waiting_writers -= 1
            self._writer = True

    def release_write(self):
        with self._condition:
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def read_locked(self):
        """Context manager holding a shared lock."""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        """Context manager holding the exclusive lock."""
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
