"""HTTP API for MailBridge."""
