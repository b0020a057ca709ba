"""
Page token index.

In-memory map from (account, mailbox, page size) to the continuation
tokens discovered so far, keyed by the page number each token leads to.
Nothing is persisted: after a restart, pages beyond the first need a
fresh walk from page 1.
"""
import threading
from typing import Dict, Optional, Tuple

PageKey = Tuple[str, str, int]


class PageTokenIndex:
    """Continuation tokens per (account, mailbox, page size)."""

    def __init__(self):
        self._tokens: Dict[PageKey, Dict[int, str]] = {}
        # Request handlers and worker threads may touch the index concurrently
        self._lock = threading.Lock()

    @staticmethod
    def key(account_id, mailbox: str, page_size: int) -> PageKey:
        return (str(account_id), mailbox, int(page_size))

    def record_next_token(self, key: PageKey, page_number: int, token: Optional[str]):
        """Store the token returned with `page_number` as the token for page_number + 1."""
        if not token:
            return
        with self._lock:
            self._tokens.setdefault(key, {})[page_number + 1] = token

    def lookup(self, key: PageKey, page_number: int) -> Optional[str]:
        with self._lock:
            return self._tokens.get(key, {}).get(page_number)

    def page_for_token(self, key: PageKey, token: str) -> Optional[int]:
        """Page a recorded token leads to, None when this index never saw it."""
        with self._lock:
            for page_number, known in self._tokens.get(key, {}).items():
                if known == token:
                    return page_number
        return None

    def clear(self, account_id=None):
        """Forget tokens for one account, or for every account."""
        with self._lock:
            if account_id is None:
                self._tokens.clear()
                return
            account = str(account_id)
            for key in [k for k in self._tokens if k[0] == account]:
                del self._tokens[key]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(pages) for pages in self._tokens.values())
