"""
Database module for the classification pipeline.

SQLite is the only backend; the pipeline talks to it through the
repository interfaces in db_interface.
"""

from .sqlite_client import SQLiteStore

__all__ = ['SQLiteStore']
