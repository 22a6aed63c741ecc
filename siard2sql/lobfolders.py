"""
Base directories of externally stored large objects.

A lobFolder may be declared for the archive, a schema, a table, a column and
every nested field of a column (array slots and UDT attributes). Each level
is only as specific as it declares: an absolute folder replaces the inherited
one, a relative folder is appended to it and a missing folder inherits it.

Nested fields are addressed by tree paths built from the same positional
tags the row documents use, e.g. /ADDRESS/u2/a3.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

from .xmlutils import child, child_text, iter_children

logger = logging.getLogger(__name__)

ARRAY_FIELD_NAME = re.compile(r'.*\[(\d+)\]\s*$')


def lob_folder_to_path(folder: Optional[str]) -> str:
    """Reduce a lobFolder value (a path or a file: URI) to a plain path."""
    if not folder:
        return ''
    if folder.lower().startswith('file:'):
        parsed = urlparse(folder)
        path = unquote(parsed.path)
        if parsed.netloc:
            path = f"//{parsed.netloc}{path}"
        return path
    return folder


def combine(parent_folder: str, own_folder: str) -> str:
    """Effective folder of a nested element given its enclosing scope's."""
    if not own_folder:
        return parent_folder
    if os.path.isabs(own_folder):
        return own_folder
    if not parent_folder:
        return own_folder
    return os.path.join(parent_folder, own_folder)


@dataclass(frozen=True)
class LobFolderEntry:
    own: str
    combined: str
    absolute: str


class LobFolderResolver:
    """Per-column map from tree path to the absolute lob folder of that element."""

    def __init__(self, archive_root: str):
        self.archive_root = archive_root
        self.entries: Dict[str, LobFolderEntry] = {}

    @classmethod
    def build(cls, archive_root: str, column_xml, default_folder: str = '') -> 'LobFolderResolver':
        """
        Walk a column declaration and record the folder of every nested field.

        default_folder seeds the root tree path "" (archive, schema and table
        lobFolders already combined by the caller).
        """
        resolver = cls(archive_root)
        resolver._add('', '', default_folder)
        column_name = child_text(column_xml, 'name', '')
        resolver._walk(column_xml, f"/{column_name}", '')
        return resolver

    def _add(self, tree_path: str, parent_path: str, own_folder: str) -> LobFolderEntry:
        own = lob_folder_to_path(own_folder)
        parent = self.entries.get(parent_path)
        combined = combine(parent.combined if parent else '', own) if tree_path else own
        absolute = os.path.normpath(os.path.join(self.archive_root, combined)) if combined else ''
        entry = LobFolderEntry(own, combined, absolute)
        self.entries[tree_path] = entry
        return entry

    def _walk(self, elem, tree_path: str, parent_path: str):
        self._add(tree_path, parent_path, child_text(elem, 'lobFolder', ''))
        fields = list(iter_children(child(elem, 'fields'), 'field'))
        for position, field in enumerate(fields, start=1):
            self._walk(field, f"{tree_path}/{self.positional_tag(field, position)}", tree_path)

    @staticmethod
    def positional_tag(field, position: int) -> str:
        """CARRAY[2] -> a2; any other field name -> u<position>."""
        match = ARRAY_FIELD_NAME.match(child_text(field, 'name', ''))
        if match:
            return f"a{int(match.group(1))}"
        return f"u{position}"

    def resolve(self, tree_path: str) -> Optional[str]:
        """
        Absolute folder for a tree path, None if nothing applies.

        Elements without an entry of their own (a UDT or array column declared
        without <fields>) inherit the folder of their nearest declared ancestor.
        """
        path = tree_path
        entry = self.entries.get(path)
        while entry is None and path:
            path = path.rpartition('/')[0]
            entry = self.entries.get(path)
        if entry is None or not entry.absolute:
            return None
        return entry.absolute
