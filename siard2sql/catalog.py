"""
Catalog of the complex SIARD types declared in header/metadata.xml.

SIARD declares user-defined (udt) and distinct types per schema, apart from
the columns that use them. Arrays are declared inline, on a column or a UDT
attribute, through a cardinality; the catalog gives each inline array a
synthetic name so that arrays, distinct types and UDTs are all looked up the
same way afterwards.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set, Tuple

from .sqltypes import TEXT, siard_type_to_affinity
from .xmlutils import child, child_text, iter_children

logger = logging.getLogger(__name__)

SIMPLE = 'simple'
ARRAY = 'array'
UDT = 'udt'
DISTINCT = 'distinct'
UNKNOWN = 'unknown'


@dataclass(frozen=True)
class TypeAttribute:
    """How a column, UDT attribute or array element declares its type."""

    name: str
    type: Optional[str] = None
    type_schema: Optional[str] = None
    type_name: Optional[str] = None
    base: Optional[str] = None
    cardinality: int = 0

    def extended_category(self) -> str:
        if self.cardinality > 0:
            return ARRAY
        if self.base:
            return DISTINCT
        if self.type_name:
            return UDT
        if self.type:
            return SIMPLE
        return UNKNOWN

    def element(self) -> 'TypeAttribute':
        """The declaration of one array slot."""
        return replace(self, cardinality=0)

    @property
    def declared_type(self) -> str:
        """Human-readable type for comments and warnings."""
        if self.type_name:
            text = f"{self.type_schema}.{self.type_name}" if self.type_schema else self.type_name
        else:
            text = self.type or self.base or '<UNKNOWN>'
        if self.cardinality > 0:
            text += f" ARRAY[{self.cardinality}]"
        return text

    @classmethod
    def from_xml(cls, elem, schema: str) -> 'TypeAttribute':
        """Read a <column>, <attribute> or <type> declaration."""
        type_name = child_text(elem, 'typeName')
        type_schema = child_text(elem, 'typeSchema')
        if type_name and not type_schema:
            type_schema = schema

        cardinality = 0
        raw = child_text(elem, 'cardinality')
        if raw:
            try:
                cardinality = int(raw)
            except ValueError:
                logger.warning(f"Invalid cardinality '{raw}' in declaration of '{child_text(elem, 'name')}'")

        return cls(
            name=child_text(elem, 'name', ''),
            type=child_text(elem, 'type'),
            type_schema=type_schema,
            type_name=type_name,
            base=child_text(elem, 'base'),
            cardinality=cardinality,
        )


@dataclass(frozen=True)
class TypeNode:
    """A catalog entry; attribute order is the u1, u2, ... order of UDT content."""

    schema: str
    name: str
    category: str
    attributes: Tuple[TypeAttribute, ...]


class TypeCatalog:
    """Complex types of one conversion run, keyed by (schema, type name)."""

    ARRAY_NAME_TEMPLATE = '__array{number}__{hint}'

    def __init__(self):
        self._types: Dict[Tuple[str, str], TypeNode] = {}
        self._array_counter = 0
        self.errors = 0

    def __len__(self):
        return len(self._types)

    def __contains__(self, key):
        return key in self._types

    def register(self, schema: str, type_xml) -> Optional[TypeNode]:
        """Register one <type> declaration of a schema."""
        name = child_text(type_xml, 'name')
        category = (child_text(type_xml, 'category') or '').lower()
        if not name:
            logger.error(f"Type without name in schema '{schema}'")
            self.errors += 1
            return None

        if category == DISTINCT:
            base = child_text(type_xml, 'base')
            if not base:
                logger.error(f"Distinct type '{schema}.{name}' declares no base type")
                self.errors += 1
            attributes = (TypeAttribute(name=name, base=base or TEXT),)
        elif category == UDT:
            attributes = tuple(
                self._udt_attribute(schema, name, attribute_xml)
                for attribute_xml in iter_children(child(type_xml, 'attributes'), 'attribute')
            )
        else:
            logger.error(f"Type '{schema}.{name}' has unsupported category '{category}'")
            self.errors += 1
            return None

        node = TypeNode(schema, name, category, attributes)
        self._types[(schema, name)] = node
        logger.debug(f"Registered {category} type {schema}.{name} with {len(attributes)} attribute(s)")
        return node

    def _udt_attribute(self, schema: str, type_name: str, attribute_xml) -> TypeAttribute:
        attribute = TypeAttribute.from_xml(attribute_xml, schema)
        category = attribute.extended_category()
        if category == ARRAY:
            return self.inline_array(schema, attribute)
        if category == DISTINCT:
            logger.error(
                f"Attribute '{attribute.name}' of UDT '{schema}.{type_name}' declares a distinct base; "
                f"only types and type references are allowed there")
            self.errors += 1
            return TypeAttribute(name=attribute.name)
        return attribute

    def register_array(self, schema: str, hint_name: str, element: TypeAttribute) -> str:
        """
        Register an anonymous array and return its synthesized name.

        element carries the slot type and the cardinality. Names come from a
        run-wide counter, so two identical inline arrays get two entries.
        """
        self._array_counter += 1
        name = self.ARRAY_NAME_TEMPLATE.format(number=self._array_counter, hint=hint_name)
        slot = TypeAttribute(
            name=hint_name,
            type=element.type,
            type_schema=element.type_schema,
            type_name=element.type_name,
            cardinality=element.cardinality,
        )
        self._types[(schema, name)] = TypeNode(schema, name, ARRAY, (slot,))
        return name

    def inline_array(self, schema: str, attribute: TypeAttribute) -> TypeAttribute:
        """Register an inline array and return a reference to it."""
        name = self.register_array(schema, attribute.name, attribute)
        return TypeAttribute(name=attribute.name, type_schema=schema, type_name=name)

    def column_attribute(self, schema: str, column_xml) -> TypeAttribute:
        """Build the type declaration of a column, registering its inline array if any."""
        attribute = TypeAttribute.from_xml(column_xml, schema)
        if attribute.extended_category() == ARRAY:
            return self.inline_array(schema, attribute)
        return attribute

    def resolve(self, schema: Optional[str], name: Optional[str]) -> Optional[TypeNode]:
        """Return the catalog entry, or None when the reference names a primitive type."""
        if not name:
            return None
        return self._types.get((schema, name))

    def affinity(self, attribute: TypeAttribute) -> Optional[str]:
        """SQLite affinity for a column declaration, None when the type is unsupported."""
        category = attribute.extended_category()
        if category == SIMPLE:
            return siard_type_to_affinity(attribute.type)
        if category == DISTINCT:
            return siard_type_to_affinity(attribute.base)
        if category == ARRAY:
            return TEXT
        if category == UDT:
            node = self.resolve(attribute.type_schema, attribute.type_name)
            if node is None:
                logger.warning(
                    f"Type '{attribute.declared_type}' is not declared in the archive, "
                    f"treating it as a predefined type")
                return siard_type_to_affinity(attribute.type_name)
            if node.category == DISTINCT:
                return self.affinity(node.attributes[0])
            # arrays and UDTs are stored as JSON text
            return TEXT
        return None

    def find_cycles(self) -> List[Tuple[str, str]]:
        """Return the types that reach themselves through their attributes."""
        cyclic = []
        for key in self._types:
            if self._reaches(key, key, set()):
                cyclic.append(key)
        return cyclic

    def _reaches(self, start: Tuple[str, str], target: Tuple[str, str], seen: Set[Tuple[str, str]]) -> bool:
        node = self._types.get(start)
        if node is None:
            return False
        for attribute in node.attributes:
            if not attribute.type_name:
                continue
            key = (attribute.type_schema, attribute.type_name)
            if key == target:
                return True
            if key in seen:
                continue
            seen.add(key)
            if self._reaches(key, target, seen):
                return True
        return False
