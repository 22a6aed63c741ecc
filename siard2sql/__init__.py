"""SIARD to SQL Converter

A Python tool for converting SIARD (Software Independent Archival of Relational Databases)
archive files to SQLite-compliant SQL statements, including complex types and
large objects stored in (nested) zip containers.
"""

from .converter import ArchiveSummary, ConversionReport, SiardToSql, main

__version__ = "0.1.0"
__all__ = ["SiardToSql", "ArchiveSummary", "ConversionReport", "main"]
