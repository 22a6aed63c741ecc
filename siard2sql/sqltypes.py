"""
SIARD type to SQLite affinity mapping and SQL literal encoding.

SQLite knows five column affinities: TEXT, NUMERIC, INTEGER, REAL and BLOB.
Every SIARD predefined type is mapped onto one of them by keyword search,
first match wins:

    BIGINT, SMALLINT, INTEGER, INT, BOOLEAN          -> INTEGER
    NUMERIC(...), DECIMAL(...), DEC(...)             -> NUMERIC
    DOUBLE PRECISION, FLOAT(p), REAL                 -> REAL
    BINARY LARGE OBJECT, BLOB, VARBINARY, BINARY     -> BLOB
    anything else (CHAR, CLOB, XML, DATE, ...)       -> TEXT
"""

import re
from functools import lru_cache
from typing import List, Pattern, Tuple

TEXT = 'TEXT'
NUMERIC = 'NUMERIC'
INTEGER = 'INTEGER'
REAL = 'REAL'
BLOB = 'BLOB'

NUMERIC_AFFINITIES = (INTEGER, REAL, NUMERIC)

AFFINITY_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r'(BIG|SMALL)INT|INTEGER|\bINT\b|BOOL', re.IGNORECASE), INTEGER),
    (re.compile(r'NUMERIC|DECIMAL|DEC\s*\(', re.IGNORECASE), NUMERIC),
    (re.compile(r'DOUBLE|FLOAT|REAL', re.IGNORECASE), REAL),
    (re.compile(r'BINARY|BLOB|VARBINARY', re.IGNORECASE), BLOB),
]

# SIARD escapes characters not representable in XML as \u00XX
SIARD_ESCAPE = re.compile(r'\\u00([0-9A-Fa-f]{2})')


@lru_cache(maxsize=None)
def siard_type_to_affinity(siard_type: str) -> str:
    """Map a SIARD predefined type string to a SQLite affinity."""
    for pattern, affinity in AFFINITY_PATTERNS:
        if pattern.search(siard_type):
            return affinity
    return TEXT


def quote_text(text: str) -> str:
    """Single-quote a string for SQLite, doubling embedded quotes."""
    return "'" + text.replace("'", "''") + "'"


def quote_identifier(name: str) -> str:
    """Double-quote an identifier for key and index column lists."""
    return '"' + name.replace('"', '""') + '"'


def blob_literal(data: bytes) -> str:
    """b'SOS' -> X'534f53'"""
    return "X'" + data.hex() + "'"


def text_blob_literal(data: bytes) -> str:
    """Hex blob literal cast to TEXT, for text that may hold NUL or control bytes."""
    return f"CAST({blob_literal(data)} AS TEXT)"


def siard_decode(text: str) -> Tuple[bytes, bool]:
    """
    Decode SIARD-escaped text to raw bytes.

    Characters 0-8, 14-31, 127-159, the backslash and runs of spaces are
    stored as \\u00XX markers in SIARD content; each marker becomes the single
    byte XX. Everything else is kept as UTF-8. Returns the decoded bytes and
    whether any marker was found.
    """
    buffer = bytearray()
    position = 0
    found = False
    for match in SIARD_ESCAPE.finditer(text):
        found = True
        buffer += text[position:match.start()].encode('utf-8')
        buffer.append(int(match.group(1), 16))
        position = match.end()
    buffer += text[position:].encode('utf-8')
    return bytes(buffer), found
