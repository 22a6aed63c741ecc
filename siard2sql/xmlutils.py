"""
Namespace-agnostic lookups over lxml element trees.

SIARD documents declare a default namespace that differs between format
versions, so every lookup here compares local names only.
"""

from typing import Iterator, List, Optional, Pattern, Union

from lxml import etree

TagMatcher = Union[str, Pattern]


def local_name(elem) -> str:
    """Return the tag of an element without its namespace."""
    return etree.QName(elem).localname


def _is_element(node) -> bool:
    # Comments and processing instructions carry a callable as tag
    return isinstance(node.tag, str)


def _matches(elem, tag: TagMatcher) -> bool:
    name = local_name(elem)
    if isinstance(tag, str):
        return name == tag
    return tag.fullmatch(name) is not None


def iter_children(elem, tag: Optional[TagMatcher] = None) -> Iterator:
    """Yield the direct child elements of elem, optionally filtered by tag."""
    if elem is None:
        return
    for child in elem:
        if _is_element(child) and (tag is None or _matches(child, tag)):
            yield child


def child(elem, tag: str):
    """Return the first direct child with the given tag, or None."""
    return next(iter_children(elem, tag), None)


def child_text(elem, tag: str, default: Optional[str] = None) -> Optional[str]:
    """Return the stripped text of the first direct child with the given tag."""
    found = child(elem, tag)
    if found is None or found.text is None:
        return default
    text = found.text.strip()
    return text if text else default


def get_attribute(elem, name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an attribute value, ignoring namespaces on the attribute name."""
    if elem is None:
        return default
    value = elem.get(name)
    if value is not None:
        return value
    for key, value in elem.attrib.items():
        if etree.QName(key).localname == name:
            return value
    return default


def find_all(elem, tag: TagMatcher, max_depth: int = 9) -> List:
    """Return every element matching tag up to max_depth levels below elem (elem itself is depth 0)."""
    found = []
    _collect(elem, tag, max_depth, found)
    return found


def _collect(elem, tag: TagMatcher, max_depth: int, found: List):
    if elem is None or max_depth < 0:
        return
    if _matches(elem, tag):
        found.append(elem)
    for node in iter_children(elem):
        _collect(node, tag, max_depth - 1, found)

