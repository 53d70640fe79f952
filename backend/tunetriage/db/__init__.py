"""Database package for the liked songs cache."""

from .database import init_db, get_db_connection

__all__ = ['init_db', 'get_db_connection']
