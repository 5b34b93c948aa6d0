"""Resource store: async SQLAlchemy implementation of the versioned object store."""

from .models import Base, ResourceField, ResourceRecord
from .session import create_tables, make_engine, make_session_factory
from .store import CREATE, DELETE, UPDATE, ObjectKey, ResourceStore, key_of

__all__ = [
    "Base", "ResourceField", "ResourceRecord",
    "create_tables", "make_engine", "make_session_factory",
    "CREATE", "DELETE", "UPDATE",
    "ObjectKey", "ResourceStore", "key_of",
]
