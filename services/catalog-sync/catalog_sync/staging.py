"""
Staging area for files uploaded through the exchange protocol.

Files are stored by sanitized name in a local directory and, when an object
store is configured, mirrored under ``exchange/`` so they survive restarts of
hosts with ephemeral disks.
"""

import logging
from pathlib import Path
from typing import Optional

from catalog_sync.exceptions import ObjectStoreError
from catalog_sync.images import sanitize_key

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "exchange"


class StagingArea:
    """
    Args:
        directory: Local staging directory
        remote: Optional ObjectStore mirror
    """

    def __init__(self, directory: str, remote=None):
        self.directory = Path(directory)
        self.remote = remote

    def _name(self, filename: str) -> str:
        name = sanitize_key(filename)
        if not name:
            raise ValueError(f"Invalid staged filename {filename!r}")
        return name

    def remote_key(self, filename: str) -> str:
        return f"{REMOTE_PREFIX}/{self._name(filename)}"

    def save(self, filename: str, data: bytes) -> str:
        """
        Stage a file and return its sanitized name.

        A failed mirror upload is logged; the local copy is authoritative.
        """
        name = self._name(filename)
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / name).write_bytes(data)
        logger.info(f"Staged {name} ({len(data)} bytes)", extra={"filename": name})

        if self.remote is not None:
            try:
                self.remote.upload(self.remote_key(name), data, content_type="application/xml")
            except ObjectStoreError as e:
                logger.warning(f"Failed to mirror {name} to object store: {e}", extra={"filename": name})
        return name

    def read(self, filename: str) -> bytes:
        """
        Read a staged file, falling back to the object store mirror.

        Raises:
            FileNotFoundError: If the file is staged nowhere
        """
        name = self._name(filename)
        path = self.directory / name
        if path.is_file():
            return path.read_bytes()
        if self.remote is not None:
            try:
                return self.remote.download(self.remote_key(name))
            except ObjectStoreError as e:
                logger.warning(f"Staged file {name} not found in object store: {e}")
        raise FileNotFoundError(f"Staged file not found: {name}")

    def list_local(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_file())

    def list_remote(self) -> list[str]:
        if self.remote is None:
            return []
        prefix = f"{REMOTE_PREFIX}/"
        return sorted(key[len(prefix):] for key in self.remote.list_keys(prefix))

    def read_remote(self, name: str) -> bytes:
        return self.remote.download(self.remote_key(name))
