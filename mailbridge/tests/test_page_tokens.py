"""
Unit tests for the in-memory page token index.
"""
from mailbridge.core.sync.page_tokens import PageTokenIndex


class TestPageTokenIndex:

    def test_token_is_recorded_for_next_page(self):
        index = PageTokenIndex()
        key = index.key("acct", "INBOX", 20)

        index.record_next_token(key, 1, "tok-2")

        assert index.lookup(key, 2) == "tok-2"
        assert index.lookup(key, 1) is None

    def test_keys_include_page_size(self):
        index = PageTokenIndex()
        index.record_next_token(index.key("acct", "INBOX", 20), 1, "tok")

        assert index.lookup(index.key("acct", "INBOX", 50), 2) is None

    def test_empty_token_is_ignored(self):
        index = PageTokenIndex()
        index.record_next_token(index.key("acct", "INBOX", 20), 1, None)

        assert len(index) == 0

    def test_clear_one_account(self):
        index = PageTokenIndex()
        index.record_next_token(index.key("a", "INBOX", 20), 1, "a2")
        index.record_next_token(index.key("b", "INBOX", 20), 1, "b2")

        index.clear("a")

        assert index.lookup(index.key("a", "INBOX", 20), 2) is None
        assert index.lookup(index.key("b", "INBOX", 20), 2) == "b2"

    def test_clear_all(self):
        index = PageTokenIndex()
        index.record_next_token(index.key("a", "INBOX", 20), 1, "a2")
        index.record_next_token(index.key("a", "INBOX", 20), 2, "a3")

        assert len(index) == 2
        index.clear()
        assert len(index) == 0

    def test_page_for_token(self):
        index = PageTokenIndex()
        key = index.key("acct", "INBOX", 20)
        index.record_next_token(key, 1, "tok-2")
        index.record_next_token(key, 2, "tok-3")

        assert index.page_for_token(key, "tok-3") == 3
        assert index.page_for_token(key, "unknown") is None
        assert index.page_for_token(index.key("acct", "INBOX", 50), "tok-2") is None
