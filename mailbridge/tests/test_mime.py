"""
Unit tests for MIME parsing and building.
"""
import base64
from datetime import datetime, timedelta, timezone
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from mailbridge.core.email.mime import (
    NO_SUBJECT,
    build_mime_message,
    html_to_text,
    make_preview,
    parse_address_list,
    parse_date,
    parse_rfc822,
    to_naive_utc,
    walk_gmail_payload,
    walk_mime,
)
from mailbridge.core.email.models import OutgoingMessage


def _b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip('=')


def _multipart_with_attachment() -> MIMEMultipart:
    outer = MIMEMultipart('mixed')
    alternative = MIMEMultipart('alternative')
    alternative.attach(MIMEText("plain body", 'plain'))
    alternative.attach(MIMEText("<p>html <b>body</b></p>", 'html'))
    outer.attach(alternative)
    attachment = MIMEApplication(b"%PDF-1.4 data", _subtype='pdf')
    attachment.add_header('Content-Disposition', 'attachment', filename='report.pdf')
    outer.attach(attachment)
    outer['From'] = 'Alice Example <alice@example.com>'
    outer['To'] = 'me@example.org, Bob <bob@example.com>'
    outer['Subject'] = '=?utf-8?q?Quarterly_r=C3=A9port?='
    outer['Date'] = 'Fri, 01 Mar 2024 14:30:15 +0200'
    outer['Message-ID'] = '<abc@example.com>'
    return outer


class TestWalkMime:

    def test_collects_bodies_and_attachments(self):
        parts = walk_mime(_multipart_with_attachment())

        assert parts.text == "plain body"
        assert "html" in parts.html
        assert len(parts.attachments) == 1
        assert parts.attachments[0].filename == "report.pdf"
        assert parts.attachments[0].mime_type == "application/pdf"
        assert parts.attachments[0].data == b"%PDF-1.4 data"

    def test_first_text_part_wins(self):
        message = MIMEMultipart('mixed')
        message.attach(MIMEText("first", 'plain'))
        message.attach(MIMEText("second", 'plain'))

        assert walk_mime(message).text == "first"

    def test_deep_nesting_does_not_recurse(self):
        root = MIMEMultipart('mixed')
        current = root
        for _ in range(3000):
            child = MIMEMultipart('mixed')
            current.attach(child)
            current = child
        current.attach(MIMEText("deep body", 'plain'))

        assert walk_mime(root).text == "deep body"


class TestParseRfc822:

    def test_normalizes_headers(self):
        message, parts = parse_rfc822(_multipart_with_attachment().as_bytes())

        assert message.subject == "Quarterly réport"
        assert message.sender.address == "alice@example.com"
        assert message.sender.name == "Alice Example"
        assert [a.address for a in message.to] == ["me@example.org", "bob@example.com"]
        assert message.internet_message_id == "<abc@example.com>"
        assert message.date == datetime(2024, 3, 1, 12, 30, 15)
        assert message.preview == "plain body"
        assert len(parts.attachments) == 1

    def test_missing_subject_and_date(self):
        fallback = datetime(2024, 1, 2, 3, 4, 5)
        message, _ = parse_rfc822(b"From: a@b.c\r\n\r\nbody", fallback_date=fallback)

        assert message.subject == NO_SUBJECT
        assert message.date == fallback


class TestWalkGmailPayload:

    def test_nested_payload(self):
        payload = {
            'mimeType': 'multipart/mixed',
            'parts': [
                {'mimeType': 'multipart/alternative', 'parts': [
                    {'mimeType': 'text/plain', 'body': {'data': _b64url("hello plain")}},
                    {'mimeType': 'text/html', 'body': {'data': _b64url("<p>hello</p>")}},
                ]},
                {'mimeType': 'application/pdf', 'filename': 'a.pdf',
                 'body': {'attachmentId': 'ATT1', 'size': 42}},
            ],
        }
        parts = walk_gmail_payload(payload)

        assert parts.text == "hello plain"
        assert parts.html == "<p>hello</p>"
        assert parts.attachments[0].remote_id == "ATT1"
        assert parts.attachments[0].size == 42

    def test_deep_payload(self):
        payload = {'mimeType': 'text/plain', 'body': {'data': _b64url("bottom")}}
        for _ in range(5000):
            payload = {'mimeType': 'multipart/mixed', 'parts': [payload]}

        assert walk_gmail_payload(payload).text == "bottom"


class TestHelpers:

    def test_to_naive_utc(self):
        aware = datetime(2024, 3, 1, 14, 30, 15, 999, tzinfo=timezone(timedelta(hours=2)))
        assert to_naive_utc(aware) == datetime(2024, 3, 1, 12, 30, 15)

    def test_parse_date_garbage_uses_fallback(self):
        fallback = datetime(2020, 1, 1)
        assert parse_date("not a date", fallback) == fallback

    def test_html_to_text_drops_scripts(self):
        assert html_to_text("<style>p{}</style><p>Hi &amp; bye</p><script>x()</script>") == "Hi & bye"

    def test_preview_prefers_text(self):
        assert make_preview("  text   body ", "<p>html</p>") == "text body"
        assert make_preview(None, "<p>html</p>") == "html"

    def test_address_list(self):
        assert [a.address for a in parse_address_list("a@x.com, Bob <b@y.com>")] == ["a@x.com", "b@y.com"]


class TestBuildMimeMessage:

    def test_reply_headers(self):
        outgoing = OutgoingMessage(
            to=["bob@example.com"], subject="Re: Hi", body="Thanks",
            bcc=["hidden@example.com"], in_reply_to="<orig@example.com>",
        )
        msg, message_id = build_mime_message(outgoing, "me@example.org", "Me")

        assert msg['In-Reply-To'] == "<orig@example.com>"
        assert msg['References'] == "<orig@example.com>"
        assert msg['Message-ID'] == message_id
        assert message_id.endswith("@example.org>")
        assert msg['From'] == "Me <me@example.org>"

    def test_html_has_plain_alternative(self):
        outgoing = OutgoingMessage(to=["bob@example.com"], subject="Hi", body="<p>Hello</p>", is_html=True)
        msg, _ = build_mime_message(outgoing, "me@example.org")

        types = [part.get_content_type() for part in msg.get_payload()]
        assert types == ["text/plain", "text/html"]
