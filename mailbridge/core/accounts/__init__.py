"""Account and credential storage."""
from .store import AccountStore

__all__ = ['AccountStore']
