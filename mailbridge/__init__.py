"""MailBridge - one mailbox interface over Gmail and IMAP/SMTP with a local search cache."""

__version__ = "1.0.0"
