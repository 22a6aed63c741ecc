#!/usr/bin/env python3
"""
SIARD to SQL Converter
Converts SIARD archive files to SQLite-compliant SQL statements.
"""

import argparse
import logging
import os
import re
import sys
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from lxml import etree

from .archive import ArchiveMemberCache, NestedPathResolver, ScratchDirectory
from .catalog import TypeCatalog
from .encoder import ColumnDescriptor, ContentEncoder
from .errors import ArchiveError, MetadataError, UnresolvablePathError
from .lobfolders import LobFolderResolver, combine, lob_folder_to_path
from .output import MultiWriter, SqliteWriter, SqlWriter
from .sqltypes import TEXT, quote_identifier, quote_text
from .xmlutils import child, child_text, find_all, get_attribute, iter_children, local_name

logger = logging.getLogger(__name__)


@dataclass
class SchemaStats:
    name: str
    tables: int = 0
    rows: int = 0
    cells: int = 0


@dataclass
class ArchiveSummary:
    """What header/metadata.xml declares, for the schemas matching the filter."""

    version: str
    total_schemas: int
    schemas: List[SchemaStats] = field(default_factory=list)


@dataclass
class ConversionReport:
    summary: ArchiveSummary
    tables: int = 0
    rows: int = 0
    cells: int = 0
    lob_files: int = 0
    warnings: int = 0
    failed_statements: int = 0
    # (schema, table, schema where the table was kept)
    skipped_tables: List[Tuple[str, str, str]] = field(default_factory=list)


@dataclass
class _Session:
    cache: ArchiveMemberCache
    resolver: NestedPathResolver
    root: str


class SiardToSql:
    """Converts SIARD archives to SQLite-compliant SQL."""

    PROGRESS_INTERVAL = 10000
    METADATA_MEMBER = 'header/metadata.xml'
    VERSION_FOLDER = 'header/siardversion'
    COLUMN_TAG = re.compile(r'c\d+')

    def __init__(self, siard_path, sql_path=None, schema_filter: str = '', comments: int = 2,
                 extract_all: bool = False, sqlite_path=None, tmp_dir: Optional[str] = None):
        self.siard_path = Path(siard_path)
        self.sql_path = sql_path
        self.schema_filter = schema_filter or ''
        self.comments = comments
        self.extract_all = extract_all
        self.sqlite_path = sqlite_path
        self.tmp_dir = tmp_dir

        # Validate input
        self._validate_input()

    def _validate_input(self):
        """Validate input path and options."""
        if not self.siard_path.exists():
            raise FileNotFoundError(f"SIARD file not found: {self.siard_path}")

        if self.siard_path.is_file() and not zipfile.is_zipfile(self.siard_path):
            raise ValueError(f"Input must be a SIARD zip file or an extracted SIARD directory: {self.siard_path}")

        try:
            self._schema_re = re.compile(self.schema_filter, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"Schema filter '{self.schema_filter}' is not a valid regexp expression: {e}")

    # Archive access

    @contextmanager
    def _session(self, extract_all: bool):
        """Scratch directory, container cache and resolver for one run."""
        with ScratchDirectory(self.tmp_dir) as scratch, ArchiveMemberCache() as cache:
            resolver = NestedPathResolver(cache, scratch.path)
            root = self._archive_root(scratch.path, extract_all)
            yield _Session(cache, resolver, root)
            cache.close_all_pending()

    def _archive_root(self, scratch_path: str, extract_all: bool) -> str:
        real_path = os.path.realpath(self.siard_path)
        if self.siard_path.is_dir():
            return real_path

        extension = self.siard_path.suffix.lower().lstrip('.')
        if not extract_all and extension not in NestedPathResolver.CONTAINER_EXTENSIONS:
            logger.info(f"'{self.siard_path.name}' has no container extension, extracting it fully")
            extract_all = True

        if extract_all:
            target = os.path.join(scratch_path, 'siard')
            logger.info(f"Extracting SIARD to {target}")
            with zipfile.ZipFile(real_path, 'r') as zip_file:
                zip_file.extractall(target)
            return target

        return real_path

    def _load_metadata(self, session: _Session):
        """Parse header/metadata.xml; any failure aborts the run."""
        path = f"{session.root}/{self.METADATA_MEMBER}"
        try:
            plain_path = session.resolver.resolve(path)
            tree = etree.parse(plain_path)
        except (UnresolvablePathError, OSError, etree.XMLSyntaxError) as e:
            raise MetadataError(f"No metadata: cannot load '{path}': {e}", path=path) from e

        root = tree.getroot()
        if root is None:
            raise MetadataError(f"No metadata: '{path}' has no root element", path=path)
        logger.info("Parsed metadata.xml")
        return root

    def _archive_version(self, session: _Session, metadata) -> str:
        """Version named by header/siardversion/<version>/, else the siardArchive attribute."""
        names = []
        try:
            if os.path.isdir(session.root):
                folder = os.path.join(session.root, self.VERSION_FOLDER)
                if os.path.isdir(folder):
                    names = os.listdir(folder)
            else:
                prefix = self.VERSION_FOLDER + '/'
                names = [
                    name[len(prefix):].split('/')[0]
                    for name in session.cache.member_names(session.root)
                    if name.startswith(prefix)
                ]
        except (OSError, ArchiveError) as e:
            logger.debug(f"Cannot list {self.VERSION_FOLDER}: {e}")

        names = sorted(name for name in set(names) if name and not name.startswith('.'))
        if names:
            return names[0]
        return get_attribute(metadata, 'version', 'unknown')

    # Metadata walking

    def _schemas(self, metadata) -> List:
        return find_all(metadata, 'schema', max_depth=2)

    def _matches_filter(self, schema_name: str) -> bool:
        return self._schema_re.search(schema_name) is not None

    def _tables(self, schema) -> List:
        return list(iter_children(child(schema, 'tables'), 'table'))

    def _column_elements(self, table) -> List:
        return list(iter_children(child(table, 'columns'), 'column'))

    def _summarize(self, session: _Session, metadata) -> ArchiveSummary:
        schemas = self._schemas(metadata)
        summary = ArchiveSummary(self._archive_version(session, metadata), len(schemas))
        for schema in schemas:
            name = child_text(schema, 'name', '')
            if not self._matches_filter(name):
                continue
            stats = SchemaStats(name)
            for table in self._tables(schema):
                rows = self._declared_rows(table)
                stats.tables += 1
                stats.rows += rows
                stats.cells += rows * len(self._column_elements(table))
            summary.schemas.append(stats)
        return summary

    def _declared_rows(self, table) -> int:
        raw = child_text(table, 'rows', '0')
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Invalid row count '{raw}' for table {child_text(table, 'name')}")
            return 0

    def _sanitize_name(self, name: str) -> str:
        """Sanitize generated index names for SQLite."""
        sanitized = re.sub(r'[^\w]', '_', name)
        return sanitized or "unnamed"

    # Public API

    def summary(self) -> ArchiveSummary:
        """Read only metadata.xml and report version and per-schema counts."""
        with self._session(extract_all=False) as session:
            metadata = self._load_metadata(session)
            return self._summarize(session, metadata)

    def convert(self) -> ConversionReport:
        """Main conversion process."""
        try:
            logger.info(f"Converting {self.siard_path}")
            with self._open_writer() as writer, self._session(self.extract_all) as session:
                return _Conversion(self, session, writer).run()
        except Exception as e:
            logger.error(f"Conversion failed: {e}")
            raise

    @contextmanager
    def _open_writer(self):
        writers = []
        stream = None
        if hasattr(self.sql_path, 'write'):
            writers.append(SqlWriter(self.sql_path))
        elif self.sql_path == '-':
            writers.append(SqlWriter(sys.stdout))
        elif self.sql_path:
            sql_file = Path(self.sql_path)
            sql_file.parent.mkdir(parents=True, exist_ok=True)
            stream = open(sql_file, 'w', encoding='utf-8')
            writers.append(SqlWriter(stream))
        if self.sqlite_path:
            writers.append(SqliteWriter.create(self.sqlite_path))
        if not writers:
            raise ValueError("No output given: name a SQL file or a SQLite database")

        writer = MultiWriter(writers)
        try:
            yield writer
        finally:
            writer.close()
            if stream is not None:
                stream.close()


class _Conversion:
    """State of one convert() call: catalog, encoder, counters."""

    def __init__(self, converter: SiardToSql, session: _Session, writer: MultiWriter):
        self.converter = converter
        self.session = session
        self.writer = writer
        self.comments = converter.comments
        self.catalog = TypeCatalog()
        self.encoder = ContentEncoder(self.catalog, session.root, session.resolver)
        self.warnings = 0
        self.index_counter = 0
        self.first_schema: Dict[str, Tuple[str, str]] = {}
        self.report: Optional[ConversionReport] = None

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings += 1

    def _comment(self, level: int, text: str):
        if self.comments >= level:
            self.writer.comment(text)

    def run(self) -> ConversionReport:
        metadata = self.converter._load_metadata(self.session)
        summary = self.converter._summarize(self.session, metadata)
        self.report = ConversionReport(summary)
        schemas = self.converter._schemas(metadata)

        self._comment(0, f"siard version={summary.version}")
        self._comment(0, f"no. of schemas={len(schemas)}")

        # Types may be referenced before their declaration, even across schemas
        for schema in schemas:
            self._register_types(schema)
        for schema_name, type_name in self.catalog.find_cycles():
            self._warn(f"Type '{schema_name}.{type_name}' references itself; "
                       f"its content is encoded up to {ContentEncoder.MAX_DEPTH} levels deep")

        archive_folder = lob_folder_to_path(child_text(metadata, 'lobFolder', ''))
        for schema in schemas:
            schema_name = child_text(schema, 'name', '')
            if not self.converter._matches_filter(schema_name):
                continue
            self._convert_schema(schema, schema_name, archive_folder)

        if self.report.skipped_tables:
            self._warn("Found table names repeated in different schemas:")
            for schema_name, table_name, first in self.report.skipped_tables:
                logger.warning(f"  skipped table '{table_name}' in schema '{schema_name}' "
                               f"(1st occurrence in schema '{first}')")

        self.report.lob_files = self.encoder.lob_files
        self.report.warnings = self.warnings + self.encoder.warnings + self.catalog.errors
        self.report.failed_statements = self.writer.failed
        logger.info(f"Conversion completed: {self.report.tables} tables, {self.report.rows} rows")
        return self.report

    def _register_types(self, schema):
        schema_name = child_text(schema, 'name', '')
        for type_xml in iter_children(child(schema, 'types'), 'type'):
            self.catalog.register(schema_name, type_xml)

    def _convert_schema(self, schema, schema_name: str, archive_folder: str):
        logger.info(f"Processing schema: {schema_name}")
        schema_folder = child_text(schema, 'folder') or schema_name
        lob_folder = combine(archive_folder, lob_folder_to_path(child_text(schema, 'lobFolder', '')))
        tables = self.converter._tables(schema)

        self._comment(1, f"schema='{schema_name}'")
        self._comment(1, f"no. of tables={len(tables)}")

        for table in tables:
            self._convert_table(table, schema_name, schema_folder, lob_folder)

    def _convert_table(self, table, schema_name: str, schema_folder: str, schema_lob_folder: str):
        table_name = child_text(table, 'name', '')
        if not table_name:
            self._warn(f"Table without name in schema '{schema_name}', skipped")
            return

        # Only the first emitted occurrence of a table name is kept
        key = table_name.lower()
        if key in self.first_schema:
            first = self.first_schema[key][0]
            if first != schema_name:
                self.report.skipped_tables.append((schema_name, table_name, first))
            else:
                self._warn(f"Table '{table_name}' declared twice in schema '{schema_name}', skipped")
            return

        logger.info(f"Processing table: {table_name}")
        table_folder = child_text(table, 'folder') or table_name
        lob_folder = combine(schema_lob_folder, lob_folder_to_path(child_text(table, 'lobFolder', '')))

        self._comment(2, f" table='{table_name}'")
        self._comment(2, f" rows='{child_text(table, 'rows', '')}'")

        columns = self._build_columns(table, schema_name, table_name, lob_folder)
        if not columns:
            self._warn(f"No columns found for table {table_name}, skipped")
            return

        primary_key = [
            text.strip() for text in
            (column.text for column in iter_children(child(table, 'primaryKey'), 'column'))
            if text and text.strip()
        ]
        self.writer.statement(self._create_table_sql(table_name, columns, primary_key))
        self.report.tables += 1
        self.first_schema[key] = (schema_name, table_name)

        self._insert_rows(table_name, schema_folder, table_folder, columns)

        for candidate_key in iter_children(child(table, 'candidateKeys'), 'candidateKey'):
            sql = self._unique_index_sql(table_name, candidate_key)
            if sql:
                self.writer.statement(sql)

    def _build_columns(self, table, schema_name: str, table_name: str,
                       lob_folder: str) -> List[ColumnDescriptor]:
        column_elements = self.converter._column_elements(table)
        self._comment(2, f" no. of columns={len(column_elements)}")

        columns = []
        for position, column_xml in enumerate(column_elements, start=1):
            attribute = self.catalog.column_attribute(schema_name, column_xml)
            name = attribute.name
            if not name:
                name = f"c{position}"
                self._warn(f"Column {position} of table '{schema_name}:{table_name}' has no name, using '{name}'")

            affinity = self.catalog.affinity(attribute)
            supported = affinity is not None
            if not supported:
                self._warn(f"Not supported type in column '{name}' of table '{schema_name}:{table_name}'")
                affinity = TEXT

            self._comment(2, f"  column='{name}' ({attribute.declared_type} -> {affinity})")
            columns.append(ColumnDescriptor(
                name=name,
                attribute=attribute,
                affinity=affinity,
                lob_folders=LobFolderResolver.build(self.session.root, column_xml, lob_folder),
                supported=supported,
            ))
        return columns

    def _create_table_sql(self, table_name: str, columns: List[ColumnDescriptor],
                          primary_key: List[str]) -> str:
        column_defs = [f"{quote_text(column.name)} {column.affinity}" for column in columns]
        if primary_key:
            column_defs.append(f"PRIMARY KEY ({', '.join(quote_identifier(name) for name in primary_key)})")
        body = ',\n  '.join(column_defs)
        return f"CREATE TABLE {quote_text(table_name)} (\n  {body}\n)"

    def _unique_index_sql(self, table_name: str, candidate_key) -> Optional[str]:
        key_name = child_text(candidate_key, 'name', 'key')
        key_columns = [
            column.text.strip() for column in iter_children(candidate_key, 'column')
            if column.text and column.text.strip()
        ]
        if not key_columns:
            self._warn(f"Candidate key '{key_name}' of table '{table_name}' has no columns")
            return None

        index_name = f"unique_idx{self.index_counter}_{self.converter._sanitize_name(key_name)}"
        self.index_counter += 1
        column_list = ', '.join(quote_identifier(name) for name in key_columns)
        return f"CREATE UNIQUE INDEX {index_name} ON {quote_identifier(table_name)} ({column_list})"

    def _table_file(self, schema_folder: str, table_folder: str) -> str:
        """content/<schema folder>/<table folder>/<table folder>.xml"""
        table_path = f"{self.session.root}/content/{schema_folder}/{table_folder}"
        return f"{table_path}/{os.path.basename(table_folder.rstrip('/'))}.xml"

    def _insert_rows(self, table_name: str, schema_folder: str, table_folder: str,
                     columns: List[ColumnDescriptor]):
        """Stream the table document and emit one INSERT per row."""
        table_file = self._table_file(schema_folder, table_folder)
        self._comment(3, f" path='{table_file}'")
        try:
            plain_path = self.session.resolver.resolve(table_file)
        except UnresolvablePathError as e:
            self._warn(f"Data file not found for table {table_name}: {e}")
            return
        if not os.path.isfile(plain_path):
            self._warn(f"Data file not found for table {table_name}: {plain_path}")
            return

        insert_sql = f"INSERT INTO {quote_text(table_name)} VALUES "
        rows_imported = 0
        depth = 0
        try:
            for event, elem in etree.iterparse(plain_path, events=('start', 'end'), huge_tree=True):
                if event == 'start':
                    depth += 1
                    if depth == 1:
                        version = get_attribute(elem, 'version', 'unknown')
                        self._comment(4, f"table name={table_name} version={version}")
                    continue

                depth -= 1
                if depth != 1 or local_name(elem) != 'row':
                    continue

                rows_imported += 1
                self._comment(5, f" row {rows_imported}")
                values = self._encode_row(elem, columns, table_name)
                self.writer.statement(insert_sql + f"({', '.join(values)})")

                if rows_imported % self.converter.PROGRESS_INTERVAL == 0:
                    logger.debug(f"Imported {rows_imported} rows for {table_name}")

                # Clean up element to free memory
                elem.clear()
                while elem.getprevious() is not None:
                    del elem.getparent()[0]
        except (etree.XMLSyntaxError, OSError) as e:
            self._warn(f"Error importing data for {table_name} after {rows_imported} rows: {e}")

        self._comment(4, f"no. of rows={rows_imported}")
        self.report.rows += rows_imported
        self.report.cells += rows_imported * len(columns)
        logger.info(f"Completed import for {table_name}: {rows_imported} rows")

    def _encode_row(self, row, columns: List[ColumnDescriptor], table_name: str) -> List[str]:
        cells = {}
        for cell in iter_children(row, self.converter.COLUMN_TAG):
            index = int(local_name(cell)[1:]) - 1
            if not 0 <= index < len(columns):
                self._warn(f"Column index out of range in table {table_name}: {local_name(cell)} "
                           f"(table has {len(columns)} columns)")
                continue
            cells[index] = cell
        return [self.encoder.encode_column(cells.get(index), column) for index, column in enumerate(columns)]


def format_summary(summary: ArchiveSummary, schema_filter: str = '') -> List[str]:
    """Human-readable schema summary."""
    if schema_filter:
        lines = [f"Found {len(summary.schemas)} schemas (out of {summary.total_schemas}) "
                 f"matching regexp '{schema_filter}':"]
    else:
        lines = [f"Found {len(summary.schemas)} schemas:"]
    for stats in summary.schemas:
        lines.append(f"  {stats.name}: {stats.tables} tables, {stats.rows} rows, {stats.cells} cells")
    return lines


def main(argv=None):
    """Command line interface."""
    parser = argparse.ArgumentParser(description='Convert SIARD files to SQLite-compliant SQL')
    parser.add_argument('siard_file', help='Path to SIARD file or extracted SIARD directory')
    parser.add_argument('sql_file', nargs='?',
                        help="Output SQL file ('-' for stdout); omit to only print the schemas found")
    parser.add_argument('-s', '--schema-filter', default='',
                        help='Only convert schemas whose name matches this regexp')
    parser.add_argument('-c', '--comments', type=int, default=2,
                        help='Amount of SQL comments in the output, 0 to 5 (default: 2)')
    parser.add_argument('--extract-all', action='store_true',
                        help='Extract the whole archive before converting')
    parser.add_argument('--sqlite', help='Also load the statements into this SQLite database')
    parser.add_argument('--tmp-dir', help='Parent directory for temporary files')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Keep stdout clean when it carries the SQL
    out = sys.stderr if args.sql_file == '-' else sys.stdout

    try:
        converter = SiardToSql(args.siard_file, args.sql_file, schema_filter=args.schema_filter,
                               comments=args.comments, extract_all=args.extract_all,
                               sqlite_path=args.sqlite, tmp_dir=args.tmp_dir)
        if args.sql_file or args.sqlite:
            report = converter.convert()
            summary = report.summary
        else:
            report = None
            summary = converter.summary()
    except (FileNotFoundError, ValueError, MetadataError) as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"Output error: {e}")
        return 1

    print(f"SIARD version: {summary.version}", file=out)
    print('\n'.join(format_summary(summary, args.schema_filter)), file=out)

    if report is not None:
        if report.warnings:
            print(f"{report.warnings} warnings, see log", file=out)
        if args.sql_file and args.sql_file != '-':
            print(f"SQL file: '{args.sql_file}' (size: {os.path.getsize(args.sql_file)} bytes)", file=out)
        if args.sqlite:
            print(f"Conversion completed: {args.sqlite}", file=out)
            print(f"You can now explore the data with: datasette {args.sqlite}", file=out)
    return 0


if __name__ == '__main__':
    sys.exit(main())
