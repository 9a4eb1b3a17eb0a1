"""Encrypted on-disk key/value cache."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from autosub.repositories.base import LocalCache

logger = logging.getLogger(__name__)


class EncryptedFileCache(LocalCache):
    """Stores each key as one Fernet token on disk.

    File names are digests of the key, so neither keys nor values are readable
    without the encryption key. An entry that cannot be decrypted is treated as
    missing; the cache only mirrors state that also lives in the remote store.
    """

    def __init__(self, directory: str | os.PathLike[str], key: str | bytes) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._cipher = Fernet(key)

    def get(self, key: str) -> Any | None:
        path = self._path_for(key)
        try:
            token = path.read_bytes()
        except FileNotFoundError:
            return None

        try:
            raw = self._cipher.decrypt(token)
        except InvalidToken:
            logger.warning("cache.unreadable entry=%s reason=invalid_token", path.name)
            return None
        return json.loads(raw.decode("utf-8"))["value"]

    def set(self, key: str, value: Any) -> None:
        token = self._cipher.encrypt(json.dumps({"value": value}).encode("utf-8"))
        path = self._path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(token)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.bin"


def generate_cache_key() -> str:
    return Fernet.generate_key().decode("ascii")


__all__ = ["EncryptedFileCache", "generate_cache_key"]
