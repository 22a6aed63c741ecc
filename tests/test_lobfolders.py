"""Tests for lob folder inheritance."""

import os

import pytest
from lxml import etree

from siard2sql.lobfolders import LobFolderResolver, combine, lob_folder_to_path

ROOT = '/archive/db.siard'


def column(text):
    return etree.fromstring(f'<column xmlns="http://www.bar.admin.ch/xmlns/siard/2/metadata.xsd">{text}</column>')


class TestCombine:
    @pytest.mark.parametrize("parent, own, expected", [
        ('lobs', '', 'lobs'),
        ('', 'own', 'own'),
        ('lobs', 'own', os.path.join('lobs', 'own')),
        ('lobs', '/abs/own', '/abs/own'),
        ('', '', ''),
    ])
    def test_combine(self, parent, own, expected):
        assert combine(parent, own) == expected

    def test_file_uri(self):
        assert lob_folder_to_path('file:///data/lobs') == '/data/lobs'
        assert lob_folder_to_path('file:../lob%20files') == '../lob files'
        assert lob_folder_to_path('plain/folder') == 'plain/folder'
        assert lob_folder_to_path(None) == ''


class TestLobFolderResolver:
    def test_column_inherits_table_folder(self):
        resolver = LobFolderResolver.build(ROOT, column('<name>DOC</name>'), 'tablelobs')
        assert resolver.resolve('/DOC') == os.path.normpath(f'{ROOT}/tablelobs')

    def test_column_folder_is_appended(self):
        resolver = LobFolderResolver.build(ROOT, column('<name>DOC</name><lobFolder>doc</lobFolder>'), 'lobs')
        assert resolver.resolve('/DOC') == os.path.normpath(f'{ROOT}/lobs/doc')

    def test_relative_folder_may_leave_the_archive(self):
        resolver = LobFolderResolver.build(ROOT, column('<name>DOC</name><lobFolder>../external</lobFolder>'))
        assert resolver.resolve('/DOC') == '/archive/external'

    def test_nested_fields(self):
        resolver = LobFolderResolver.build(ROOT, column("""
            <name>PERSON</name><lobFolder>person</lobFolder>
            <fields>
              <field><name>photo</name><lobFolder>photos</lobFolder></field>
              <field><name>scans</name>
                <fields>
                  <field><name>scans[1]</name><lobFolder>/mnt/first</lobFolder></field>
                  <field><name>scans[2]</name></field>
                </fields>
              </field>
            </fields>"""))
        assert resolver.resolve('/PERSON/u1') == os.path.normpath(f'{ROOT}/person/photos')
        assert resolver.resolve('/PERSON/u2') == os.path.normpath(f'{ROOT}/person')
        assert resolver.resolve('/PERSON/u2/a1') == '/mnt/first'
        assert resolver.resolve('/PERSON/u2/a2') == os.path.normpath(f'{ROOT}/person')

    def test_undeclared_nested_path_inherits_nearest_ancestor(self):
        resolver = LobFolderResolver.build(ROOT, column('<name>DOC</name><lobFolder>doc</lobFolder>'), 'lobs')
        assert resolver.resolve('/DOC/u1') == os.path.normpath(f'{ROOT}/lobs/doc')
        assert resolver.resolve('/DOC/u1/a2') == os.path.normpath(f'{ROOT}/lobs/doc')
        assert resolver.resolve('/OTHER/u1') == os.path.normpath(f'{ROOT}/lobs')

    def test_unknown_paths_resolve_to_none(self):
        resolver = LobFolderResolver.build(ROOT, column('<name>DOC</name>'))
        assert resolver.resolve('') is None
        assert resolver.resolve('/DOC') is None
        assert resolver.resolve('/OTHER') is None

    def test_positional_tag(self):
        field = etree.fromstring('<field><name>ITEMS[12]</name></field>')
        assert LobFolderResolver.positional_tag(field, 3) == 'a12'
        field = etree.fromstring('<field><name>street</name></field>')
        assert LobFolderResolver.positional_tag(field, 3) == 'u3'
