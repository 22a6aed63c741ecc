"""Builders for small SIARD archives, as directories or zip files."""

import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

METADATA_NS = "http://www.bar.admin.ch/xmlns/siard/2/metadata.xsd"
TABLE_NS = "http://www.bar.admin.ch/xmlns/siard/2/table.xsd"


class SiardBuilder:
    """Collects archive members and writes them out as a SIARD directory or zip."""

    def __init__(self, base: Path):
        self.base = base
        self.files: Dict[str, bytes] = {}
        self.folders: List[str] = []

    # metadata.xml fragments

    @staticmethod
    def column(name, type=None, type_schema=None, type_name=None, cardinality=None,
               lob_folder=None, fields=''):
        parts = [f"<name>{name}</name>"]
        if type:
            parts.append(f"<type>{type}</type>")
        if type_schema:
            parts.append(f"<typeSchema>{type_schema}</typeSchema>")
        if type_name:
            parts.append(f"<typeName>{type_name}</typeName>")
        if cardinality is not None:
            parts.append(f"<cardinality>{cardinality}</cardinality>")
        if lob_folder:
            parts.append(f"<lobFolder>{lob_folder}</lobFolder>")
        if fields:
            parts.append(f"<fields>{fields}</fields>")
        return f"<column>{''.join(parts)}</column>"

    @staticmethod
    def table(name, folder, columns: List[str], rows=0, primary_key: Optional[List[str]] = None,
              candidate_keys: Optional[Dict[str, List[str]]] = None, lob_folder=None):
        parts = [f"<name>{name}</name>", f"<folder>{folder}</folder>"]
        if lob_folder:
            parts.append(f"<lobFolder>{lob_folder}</lobFolder>")
        parts.append(f"<columns>{''.join(columns)}</columns>")
        if primary_key:
            key_columns = ''.join(f"<column>{column}</column>" for column in primary_key)
            parts.append(f"<primaryKey><name>pk_{name}</name>{key_columns}</primaryKey>")
        if candidate_keys:
            keys = ''.join(
                f"<candidateKey><name>{key_name}</name>"
                + ''.join(f"<column>{column}</column>" for column in key_columns)
                + "</candidateKey>"
                for key_name, key_columns in candidate_keys.items()
            )
            parts.append(f"<candidateKeys>{keys}</candidateKeys>")
        parts.append(f"<rows>{rows}</rows>")
        return f"<table>{''.join(parts)}</table>"

    @staticmethod
    def udt(name, attributes: List[str]):
        return (f"<type><name>{name}</name><category>udt</category>"
                f"<attributes>{''.join(attributes)}</attributes></type>")

    @staticmethod
    def distinct(name, base):
        return f"<type><name>{name}</name><category>distinct</category><base>{base}</base></type>"

    @staticmethod
    def attribute(name, type=None, type_schema=None, type_name=None, cardinality=None):
        parts = [f"<name>{name}</name>"]
        if type:
            parts.append(f"<type>{type}</type>")
        if type_schema:
            parts.append(f"<typeSchema>{type_schema}</typeSchema>")
        if type_name:
            parts.append(f"<typeName>{type_name}</typeName>")
        if cardinality is not None:
            parts.append(f"<cardinality>{cardinality}</cardinality>")
        return f"<attribute>{''.join(parts)}</attribute>"

    @staticmethod
    def schema(name, folder, tables: List[str], types: Optional[List[str]] = None, lob_folder=None):
        parts = [f"<name>{name}</name>", f"<folder>{folder}</folder>"]
        if lob_folder:
            parts.append(f"<lobFolder>{lob_folder}</lobFolder>")
        if types:
            parts.append(f"<types>{''.join(types)}</types>")
        parts.append(f"<tables>{''.join(tables)}</tables>")
        return f"<schema>{''.join(parts)}</schema>"

    # archive members

    def metadata(self, schemas: List[str], version='2.1', lob_folder=None):
        lob = f"<lobFolder>{lob_folder}</lobFolder>" if lob_folder else ''
        self.files['header/metadata.xml'] = (
            f'<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<siardArchive xmlns="{METADATA_NS}" version="{version}">'
            f'<dbname>test_database</dbname>{lob}'
            f'<schemas>{"".join(schemas)}</schemas>'
            f'</siardArchive>'
        ).encode('utf-8')
        self.folders.append(f'header/siardversion/{version}')

    def rows(self, schema_folder, table_folder, rows: List[str], version='2.1'):
        body = ''.join(f"<row>{row}</row>" for row in rows)
        self.files[f'content/{schema_folder}/{table_folder}/{table_folder}.xml'] = (
            f'<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<table xmlns="{TABLE_NS}" version="{version}">{body}</table>'
        ).encode('utf-8')

    def file(self, name: str, data: bytes):
        self.files[name] = data

    def write_dir(self, name='database') -> Path:
        root = self.base / name
        for folder in self.folders:
            (root / folder).mkdir(parents=True, exist_ok=True)
        for member, data in self.files.items():
            path = root / member
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return root

    def write_zip(self, name='database.siard') -> Path:
        source = self.write_dir(name + '.d')
        zip_path = self.base / name
        with zipfile.ZipFile(zip_path, 'w', zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source.rglob('*')):
                zf.write(path, path.relative_to(source).as_posix())
        return zip_path


def write_zip(path: Path, members: Dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, 'w') as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def builder(tmp_path):
    return SiardBuilder(tmp_path)


@pytest.fixture
def make_zip():
    """Write a zip file from a {member name: bytes} mapping."""
    return write_zip
