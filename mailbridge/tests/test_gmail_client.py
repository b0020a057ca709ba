"""
Unit tests for the Gmail REST client with a fake discovery service.
"""
import base64
import pytest
import socket
from datetime import datetime
from unittest.mock import MagicMock, Mock

import httplib2
from googleapiclient.errors import HttpError

from mailbridge.core.email.gmail_client import GmailClient, label_changes, normalize_gmail_message
from mailbridge.core.errors import AuthExpired, NotFound, ProviderUnavailable, RemoteBackendError


def _b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip('=')


def gmail_resource(message_id="m1", labels=("INBOX", "UNREAD"), subject="Hello"):
    return {
        'id': message_id,
        'threadId': f"t-{message_id}",
        'labelIds': list(labels),
        'snippet': 'snippet text',
        'internalDate': '1709294400000',
        'payload': {
            'mimeType': 'multipart/mixed',
            'headers': [
                {'name': 'From', 'value': 'Alice <alice@example.com>'},
                {'name': 'To', 'value': 'me@gmail.com'},
                {'name': 'Subject', 'value': subject},
                {'name': 'Date', 'value': 'Fri, 01 Mar 2024 12:00:00 +0000'},
                {'name': 'Message-ID', 'value': f'<{message_id}@example.com>'},
            ],
            'parts': [
                {'mimeType': 'text/plain', 'body': {'data': _b64url("Body text")}},
                {'mimeType': 'application/pdf', 'filename': 'a.pdf', 'body': {'attachmentId': 'ATT', 'size': 3}},
            ],
        },
    }


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({'status': str(status)}), b'{"error": {"message": "failure"}}')


def request(result=None, error=None):
    req = Mock()
    if error is not None:
        req.execute.side_effect = error
    else:
        req.execute.return_value = result
    return req


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service):
    return GmailClient("ya29.token", service_factory=lambda: service)


class TestNormalize:

    def test_maps_headers_labels_and_parts(self):
        message = normalize_gmail_message(gmail_resource(labels=("INBOX", "UNREAD", "STARRED")))

        assert message.remote_id == "m1"
        assert message.thread_id == "t-m1"
        assert message.sender.address == "alice@example.com"
        assert message.subject == "Hello"
        assert message.date == datetime(2024, 3, 1, 12, 0, 0)
        assert message.body_text == "Body text"
        assert message.is_read is False
        assert message.is_starred is True
        assert message.folder == "INBOX"
        assert message.attachments[0].id == "ATT"

    def test_folder_from_labels(self):
        assert normalize_gmail_message(gmail_resource(labels=("SENT",))).folder == "SENT"

    def test_blank_subject(self):
        assert normalize_gmail_message(gmail_resource(subject="  ")).subject == "(No Subject)"


class TestLabelChanges:

    def test_read_removes_unread(self):
        assert label_changes(["read"], []) == ([], ["UNREAD"])

    def test_unread_and_star(self):
        assert label_changes(["unread", "starred"], ["important"]) == (["UNREAD", "STARRED"], ["IMPORTANT"])

    def test_unknown_flags_are_dropped(self):
        assert label_changes(["snoozed"], ["archived"]) == ([], [])


class TestErrorTranslation:

    @pytest.mark.parametrize("status,error_type", [
        (401, AuthExpired),
        (404, NotFound),
        (500, RemoteBackendError),
    ])
    def test_http_errors(self, client, service, status, error_type):
        service.users.return_value.getProfile.return_value = request(error=http_error(status))

        with pytest.raises(error_type):
            client.get_profile()

    def test_timeout_is_provider_unavailable(self, client, service):
        service.users.return_value.getProfile.return_value = request(error=socket.timeout("timed out"))

        with pytest.raises(ProviderUnavailable):
            client.get_profile()


class TestOperations:

    def test_list_messages(self, client, service):
        messages_api = service.users.return_value.messages.return_value
        messages_api.list.return_value = request({
            'messages': [{'id': 'm1'}, {'id': 'm2'}],
            'nextPageToken': 'NEXT',
            'resultSizeEstimate': 40,
        })
        resources = {'m1': gmail_resource('m1'), 'm2': gmail_resource('m2', subject="Second")}
        messages_api.get.side_effect = lambda userId, id, format: request(resources[id])

        messages, next_token, total = client.list_messages('INBOX', 2, page_token='PREV', query='hello')

        assert [m.remote_id for m in messages] == ['m1', 'm2']
        assert next_token == 'NEXT'
        assert total == 40
        messages_api.list.assert_called_once_with(
            userId='me', labelIds=['INBOX'], maxResults=2, pageToken='PREV', q='hello'
        )

    def test_send_raw(self, client, service):
        messages_api = service.users.return_value.messages.return_value
        messages_api.send.return_value = request({'id': 'sent-1', 'threadId': 'thread-1'})

        result = client.send_raw(b"raw message", thread_id='thread-1')

        body = messages_api.send.call_args.kwargs['body']
        assert base64.urlsafe_b64decode(body['raw']) == b"raw message"
        assert body['threadId'] == 'thread-1'
        assert result.remote_id == 'sent-1'

    def test_get_attachment(self, client, service):
        messages_api = service.users.return_value.messages.return_value
        messages_api.get.return_value = request(gmail_resource('m1'))
        messages_api.attachments.return_value.get.return_value = request({'data': _b64url("pdf"), 'size': 3})

        content = client.get_attachment('m1', 'ATT')

        assert content.filename == 'a.pdf'
        assert base64.b64decode(content.data) == b"pdf"

    def test_unknown_attachment(self, client, service):
        service.users.return_value.messages.return_value.get.return_value = request(gmail_resource('m1'))

        with pytest.raises(NotFound):
            client.get_attachment('m1', 'missing')
