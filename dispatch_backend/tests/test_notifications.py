import unittest
from unittest.mock import MagicMock, patch

import requests
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError

from dispatch_backend.errors import NotificationError
from dispatch_backend.notifications import (
    GRAPH_SCOPE,
    GraphEmailClient,
    HttpWebhookForwarder,
    render_rankings_email,
)


def fake_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    return response


class GraphEmailClientTests(unittest.TestCase):
    def setUp(self):
        self.credential = MagicMock()
        self.credential.get_token.return_value = AccessToken("tok", 4_102_444_800)
        self.client = GraphEmailClient(
            tenant_id="tenant",
            client_id="client",
            client_secret="secret",
            sender="dispatch@example.test",
            credential=self.credential,
        )

    @patch("dispatch_backend.notifications.requests.post")
    def test_send_email_uses_credential_token_and_posts_message(self, mock_post):
        mock_post.return_value = fake_response(status_code=202)

        self.client.send_email(to="editor@example.test", subject="Hi", html_body="<p>x</p>")

        self.credential.get_token.assert_called_once_with(GRAPH_SCOPE)
        send_call = mock_post.call_args
        self.assertEqual(
            send_call.args[0],
            "https://graph.microsoft.com/v1.0/users/dispatch@example.test/sendMail",
        )
        self.assertEqual(send_call.kwargs["headers"]["Authorization"], "Bearer tok")
        message = send_call.kwargs["json"]["message"]
        self.assertEqual(
            message["toRecipients"][0]["emailAddress"]["address"], "editor@example.test"
        )
        self.assertEqual(message["body"]["contentType"], "HTML")

    @patch("dispatch_backend.notifications.ClientSecretCredential")
    def test_builds_client_secret_credential_from_settings(self, mock_credential):
        GraphEmailClient(
            tenant_id="tenant",
            client_id="client",
            client_secret="secret",
            sender="dispatch@example.test",
        )
        mock_credential.assert_called_once_with("tenant", "client", "secret")

    @patch("dispatch_backend.notifications.requests.post")
    def test_token_failures_raise_notification_error(self, mock_post):
        self.credential.get_token.side_effect = ClientAuthenticationError(
            message="invalid_client"
        )
        with self.assertRaises(NotificationError):
            self.client.send_email(to="a@example.test", subject="1", html_body="")
        mock_post.assert_not_called()

    @patch("dispatch_backend.notifications.requests.post")
    def test_send_failures_raise_notification_error(self, mock_post):
        mock_post.return_value = fake_response(status_code=401)
        with self.assertRaises(NotificationError):
            self.client.send_email(to="a@example.test", subject="1", html_body="")


class HttpWebhookForwarderTests(unittest.TestCase):
    @patch("dispatch_backend.notifications.requests.post")
    def test_forward_posts_json(self, mock_post):
        mock_post.return_value = fake_response(status_code=200)
        HttpWebhookForwarder(timeout=5).forward("https://hooks.test/x", {"a": 1})
        mock_post.assert_called_once_with("https://hooks.test/x", json={"a": 1}, timeout=5)

    @patch("dispatch_backend.notifications.requests.post")
    def test_connection_errors_raise_notification_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(NotificationError):
            HttpWebhookForwarder().forward("https://hooks.test/x", {})


class RenderRankingsEmailTests(unittest.TestCase):
    def test_orders_by_rank_and_escapes(self):
        subject, body = render_rankings_email(
            "batch-1",
            [
                {"rank": 2, "title": "Second"},
                {"rank": 1, "title": "<b>First</b>", "link": "https://e.test/1"},
                {"rank": None, "title": None},
            ],
        )
        self.assertEqual(subject, "Dispatch rankings received: 3 articles")
        self.assertIn("&lt;b&gt;First&lt;/b&gt;", body)
        self.assertLess(body.index("First"), body.index("Second"))
        self.assertIn("(untitled)", body)


if __name__ == "__main__":
    unittest.main()
