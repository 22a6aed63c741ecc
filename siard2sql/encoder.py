"""
Encode the content of one SIARD cell as a SQLite literal.

Simple values become plain numeric literals, quoted text or hex blob
literals. Arrays and UDTs become json_array(...) / json_object(...)
constructions whose members are encoded recursively; inside them every
value is forced to be JSON-safe text.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .archive import NestedPathResolver
from .catalog import ARRAY, DISTINCT, SIMPLE, UDT, TypeAttribute, TypeCatalog
from .errors import TypeRecursionError, UnresolvablePathError
from .lobfolders import LobFolderResolver
from .sqltypes import (
    NUMERIC_AFFINITIES,
    TEXT,
    blob_literal,
    quote_text,
    siard_decode,
    siard_type_to_affinity,
    text_blob_literal,
)
from .xmlutils import child, get_attribute

logger = logging.getLogger(__name__)

EMPTY = "''"


@dataclass
class ColumnDescriptor:
    """A table column as declared in metadata.xml, built once per table."""

    name: str
    attribute: TypeAttribute
    affinity: str
    lob_folders: LobFolderResolver
    supported: bool = True

    @property
    def tree_path(self) -> str:
        # Lob folders are keyed by the declared name, even when empty
        return f"/{self.attribute.name}"


class ContentEncoder:
    """Produces the SQL literal of every cell of a conversion run."""

    MAX_DEPTH = 64

    def __init__(self, catalog: TypeCatalog, archive_root: str, resolver: NestedPathResolver):
        self.catalog = catalog
        self.archive_root = archive_root
        self.resolver = resolver
        self.warnings = 0
        self.lob_files = 0

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings += 1

    def encode_column(self, element, column: ColumnDescriptor) -> str:
        """Literal for one column of one row; element is None when the row omits it."""
        if element is None:
            return EMPTY
        if not column.supported:
            return self.encode_simple(element, TEXT, column.lob_folders, column.tree_path)
        try:
            return self.encode_value(element, column.attribute, column.lob_folders, column.tree_path)
        except TypeRecursionError as e:
            self._warn(f"Column '{column.name}': {e.message}")
            return EMPTY

    def encode_value(self, element, attribute: TypeAttribute, lob_folders: LobFolderResolver,
                     tree_path: str, depth: int = 0, textify: bool = False) -> str:
        """Dispatch on the declared category of attribute."""
        if element is None:
            return EMPTY
        category = attribute.extended_category()
        if category == SIMPLE:
            return self.encode_simple(element, siard_type_to_affinity(attribute.type),
                                      lob_folders, tree_path, textify)
        if category == DISTINCT:
            return self.encode_simple(element, siard_type_to_affinity(attribute.base),
                                      lob_folders, tree_path, textify)
        if category == UDT:
            return self.encode_complex(element, attribute.type_schema, attribute.type_name,
                                       lob_folders, tree_path, depth)
        if category == ARRAY:
            # Inline arrays are normally rewritten to catalog references beforehand
            return self._encode_array(element, attribute, lob_folders, tree_path, depth)
        return self.encode_simple(element, TEXT, lob_folders, tree_path, textify)

    def encode_simple(self, element, affinity: str, lob_folders: Optional[LobFolderResolver],
                      tree_path: str, textify: bool = False) -> str:
        """Literal for a predefined-type value, inline or in an external file."""
        if element is None:
            return EMPTY

        lob_file = get_attribute(element, 'file')
        if lob_file:
            data = self._read_lob(lob_file, lob_folders, tree_path)
            if data is None:
                return EMPTY
            if affinity == TEXT or textify:
                return text_blob_literal(data)
            return blob_literal(data)

        text = element.text or ''
        if affinity in NUMERIC_AFFINITIES:
            # SIARD numeric content is already a valid SQL literal
            text = text.strip()
            return text if text else EMPTY

        decoded, escaped = siard_decode(text)
        if escaped:
            return text_blob_literal(decoded)
        return quote_text(text)

    def encode_complex(self, element, type_schema: Optional[str], type_name: Optional[str],
                       lob_folders: LobFolderResolver, tree_path: str, depth: int = 0) -> str:
        """Literal for a value of a catalog type; unknown types are encoded as predefined."""
        if element is None:
            return EMPTY
        if depth > self.MAX_DEPTH:
            raise TypeRecursionError(
                f"type '{type_schema}.{type_name}' nested deeper than {self.MAX_DEPTH} levels at '{tree_path}'",
                type_schema=type_schema, type_name=type_name, tree_path=tree_path)

        node = self.catalog.resolve(type_schema, type_name)
        if node is None:
            return self.encode_simple(element, siard_type_to_affinity(type_name or ''),
                                      lob_folders, tree_path, textify=True)

        if node.category == ARRAY:
            return self._encode_array(element, node.attributes[0], lob_folders, tree_path, depth)

        if node.category == DISTINCT:
            # Transparent alias: same element, same tree path
            return self.encode_value(element, node.attributes[0], lob_folders, tree_path,
                                     depth + 1, textify=depth > 0)

        members = []
        for position, attribute in enumerate(node.attributes, start=1):
            tag = f"u{position}"
            member = child(element, tag)
            members.append(quote_text(attribute.name))
            members.append(self.encode_value(member, attribute, lob_folders, f"{tree_path}/{tag}",
                                             depth + 1, textify=True))
        return f"json_object({', '.join(members)})"

    def _encode_array(self, element, slot: TypeAttribute, lob_folders: LobFolderResolver,
                      tree_path: str, depth: int) -> str:
        slot_type = slot.element()
        items = []
        for position in range(1, slot.cardinality + 1):
            tag = f"a{position}"
            item = child(element, tag)
            items.append(self.encode_value(item, slot_type, lob_folders, f"{tree_path}/{tag}",
                                           depth + 1, textify=True))
        return f"json_array({', '.join(items)})"

    def _read_lob(self, lob_file: str, lob_folders: Optional[LobFolderResolver],
                  tree_path: str) -> Optional[bytes]:
        base = lob_folders.resolve(tree_path) if lob_folders else None
        path = os.path.normpath(os.path.join(base or self.archive_root, lob_file))
        try:
            plain_path = self.resolver.resolve(path)
            with open(plain_path, 'rb') as f:
                data = f.read()
        except (UnresolvablePathError, OSError) as e:
            self._warn(f"External file '{path}' could not be read: {e}")
            return None
        self.lob_files += 1
        return data
