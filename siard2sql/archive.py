"""
Random access to members of (possibly nested) zip containers.

A SIARD archive is a zip file; external large objects may live in further
zip or siard containers, and those may be nested inside one another. Paths
such as outer.zip/inner.siard/content/x.bin address a member through such a
chain. Every container is opened and indexed once per run; members are then
extracted by their indexed entry instead of rescanning the central
directory.
"""

import logging
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import (
    ArchiveExtractionError,
    ArchiveMemberNotFound,
    ArchiveOpenError,
    UnresolvablePathError,
)

logger = logging.getLogger(__name__)

OPEN = 'open'
PENDING_CLOSE = 'pending-close'
CLOSED = 'closed'


@dataclass
class IndexedArchive:
    """An open zip container and its member index."""

    path: str
    zip_file: zipfile.ZipFile
    members: Dict[str, zipfile.ZipInfo] = field(default_factory=dict)
    state: str = OPEN

    def __contains__(self, member_name):
        return member_name in self.members


class ArchiveMemberCache:
    """
    Open zip containers of one run, keyed by path.

    Containers are released after each use but only physically closed by
    close_all_pending(), because one row commonly references many members
    of the same container.
    """

    def __init__(self):
        self._archives: Dict[str, IndexedArchive] = {}
        self._pending: List[str] = []
        self._extracted: Dict[Tuple[str, str], str] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all()

    def is_open(self, path: str) -> bool:
        return path in self._archives

    def open_indexed(self, path: str) -> IndexedArchive:
        """Return the cached handle for path, opening and indexing it on first use."""
        handle = self._archives.get(path)
        if handle is not None:
            if handle.state == PENDING_CLOSE:
                self._pending.remove(path)
            handle.state = OPEN
            return handle

        try:
            zip_file = zipfile.ZipFile(path)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveOpenError(f"Path '{path}' cannot be unzipped: {e}", path=path) from e

        handle = IndexedArchive(path, zip_file)
        for info in zip_file.infolist():
            handle.members[info.filename] = info
        self._archives[path] = handle
        logger.info(f"Archive '{path}' open and indexed: found {len(handle.members)} entries")
        return handle

    def member_names(self, path: str) -> List[str]:
        handle = self.open_indexed(path)
        try:
            return list(handle.members)
        finally:
            self.release(handle)

    def _member_info(self, handle: IndexedArchive, member_name: str) -> zipfile.ZipInfo:
        info = handle.members.get(member_name)
        if info is None:
            raise ArchiveMemberNotFound(
                f"Member '{member_name}' not found in '{handle.path}'",
                path=handle.path, member=member_name)
        return info

    def extract_member(self, handle: IndexedArchive, member_name: str) -> bytes:
        """Read one member by its indexed entry."""
        info = self._member_info(handle, member_name)
        try:
            with handle.zip_file.open(info) as member:
                return member.read()
        except (OSError, zipfile.BadZipFile, RuntimeError) as e:
            raise ArchiveExtractionError(
                f"Error extracting '{member_name}' from '{handle.path}': {e}",
                path=handle.path, member=member_name) from e

    def extract_to(self, path: str, member_name: str, destination: str) -> str:
        """Extract one member below destination and return its plain path."""
        key = (path, member_name)
        extracted = self._extracted.get(key)
        if extracted is not None and os.path.exists(extracted):
            return extracted

        # Same sanitizing as ZipFile.extract: no absolute paths, no '..'
        parts = [part for part in member_name.split('/') if part not in ('', '.', '..')]
        if not parts or member_name.endswith('/'):
            raise ArchiveExtractionError(
                f"Member '{member_name}' of '{path}' is not a file", path=path, member=member_name)
        extracted = os.path.join(destination, *parts)

        handle = self.open_indexed(path)
        try:
            data = self.extract_member(handle, member_name)
        finally:
            self.release(handle)

        try:
            os.makedirs(os.path.dirname(extracted), exist_ok=True)
            with open(extracted, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise ArchiveExtractionError(
                f"Error writing '{member_name}' from '{path}' to '{extracted}': {e}",
                path=path, member=member_name) from e

        self._extracted[key] = extracted
        logger.debug(f"Extracted '{member_name}' from '{path}' to '{extracted}'")
        return extracted

    def release(self, handle: IndexedArchive):
        """Mark a handle as no longer in use; it stays indexed until close_all_pending()."""
        if handle.state == OPEN:
            handle.state = PENDING_CLOSE
            self._pending.append(handle.path)

    def close_all_pending(self):
        """Physically close every released container and forget its index."""
        while self._pending:
            path = self._pending.pop()
            handle = self._archives.pop(path, None)
            if handle is not None:
                self._close(handle)

    def close_all(self):
        """Close every container, released or not."""
        self._pending.clear()
        while self._archives:
            _, handle = self._archives.popitem()
            self._close(handle)
        self._extracted.clear()

    def _close(self, handle: IndexedArchive):
        handle.zip_file.close()
        handle.state = CLOSED
        logger.debug(f"Archive '{handle.path}' closed")


class NestedPathResolver:
    """Turn a path through nested zip/siard containers into a plain file path."""

    CONTAINER_EXTENSIONS = ('zip', 'siard')

    def __init__(self, cache: ArchiveMemberCache, scratch_dir: str):
        self.cache = cache
        self.scratch_dir = scratch_dir
        self._destinations: Dict[str, str] = {}
        extensions = '|'.join(re.escape(extension) for extension in self.CONTAINER_EXTENSIONS)
        # Greedy prefix: the longest container boundary is split first
        self._container_re = re.compile(rf'^(.*\.(?:{extensions}))/(.+)$', re.IGNORECASE | re.DOTALL)

    def split(self, path: str) -> Optional[Tuple[str, str]]:
        """(container, remainder) at the last container boundary, None for a plain path."""
        match = self._container_re.match(path)
        if match is None:
            return None
        return match.group(1), match.group(2)

    def resolve(self, path: str) -> str:
        """
        Return a plain filesystem path for path, extracting containers as needed.

        Paths without a container boundary are returned unchanged.
        """
        try:
            return self._resolve(path)
        except (ArchiveOpenError, ArchiveMemberNotFound, ArchiveExtractionError) as e:
            raise UnresolvablePathError(f"Cannot resolve '{path}': {e.message}", path=path) from e

    def _resolve(self, path: str) -> str:
        parts = self.split(path)
        if parts is None:
            return path
        container, member = parts

        try:
            plain_container = self._resolve(container)
        except ArchiveMemberNotFound:
            # The inner "container" may be a directory inside the outer one
            # (e.g. a folder named x.zip/): merge it into the member and retry once
            outer = self.split(container)
            if outer is None:
                raise
            container, prefix = outer
            member = f"{prefix}/{member}"
            plain_container = self._resolve(container)

        return self._open_link(plain_container, member)

    def _open_link(self, container: str, member: str) -> str:
        if os.path.isdir(container):
            return os.path.join(container, member)
        return self.cache.extract_to(container, member, self._destination(container))

    def _destination(self, container: str) -> str:
        destination = self._destinations.get(container)
        if destination is None:
            destination = os.path.join(self.scratch_dir, f"archive{len(self._destinations)}")
            os.makedirs(destination, exist_ok=True)
            self._destinations[container] = destination
        return destination


class ScratchDirectory:
    """Temporary directory owned by one run, deleted recursively on exit."""

    MARKER = '_siard2sql_'

    def __init__(self, parent: Optional[str] = None):
        self.parent = parent
        self.path: Optional[str] = None

    def __enter__(self) -> 'ScratchDirectory':
        self.path = tempfile.mkdtemp(prefix=f"_tmp{self.MARKER}", dir=self.parent)
        logger.info(f"Created scratch directory '{self.path}'")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()

    def cleanup(self):
        """Delete the directory, refusing any path that lacks the run marker."""
        if not self.path or not os.path.exists(self.path):
            return
        real_path = os.path.realpath(self.path)
        if self.MARKER not in os.path.basename(real_path):
            logger.error(f"Refusing to delete '{real_path}': marker '{self.MARKER}' not found")
            return
        shutil.rmtree(real_path)
        logger.info(f"Scratch directory '{real_path}' deleted")
        self.path = None
