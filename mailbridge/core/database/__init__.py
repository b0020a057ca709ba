"""Database module"""
from .models import Base, Account, MailCredential, CachedMessage, EMBEDDING_DIMENSIONS, to_uuid
from .connection import get_db, init_db, get_session_factory, make_session_factory, session_scope

__all__ = [
    'Base',
    'Account',
    'MailCredential',
    'CachedMessage',
    'EMBEDDING_DIMENSIONS',
    'to_uuid',
    'get_db',
    'init_db',
    'get_session_factory',
    'make_session_factory',
    'session_scope',
]
