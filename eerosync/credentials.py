#!/usr/bin/env python3
"""
eerosync - Credential Store
Opaque put/get/delete of session tokens. Tokens are kept one per file in
the state directory as ``.eero_token_<key>``.
"""
import logging
import os
import re
import threading

from eerosync.config import STATE_DIR

logger = logging.getLogger(__name__)

TOKEN_FILE_PREFIX = ".eero_token_"


class CredentialStore:
    """File-backed token storage. Files are created owner read/write only."""

    def __init__(self, directory=None):
        self.directory = directory or STATE_DIR

    def _path(self, key):
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.directory, TOKEN_FILE_PREFIX + safe)

    def get(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'r') as f:
            return f.read().strip() or None

    def put(self, key, value):
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(value)
        logger.debug("Stored credential %s", key)

    def delete(self, key):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)
            logger.debug("Deleted credential %s", key)


class InMemoryCredentialStore:
    def __init__(self, initial=None):
        self._values = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._values.get(key)

    def put(self, key, value):
        with self._lock:
            self._values[key] = value

    def delete(self, key):
        with self._lock:
            self._values.pop(key, None)
