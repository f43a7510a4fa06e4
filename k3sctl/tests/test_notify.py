from unittest.mock import Mock, patch

import requests

from k3sctl.modules.k3s.models import RunSummary
from k3sctl.utils.notify import send_webhook

URL = "https://hooks.example.com/k3s"


@patch("k3sctl.utils.notify.requests.post")
def test_posts_headline(mock_post):
    mock_post.return_value = Mock(status_code=200)
    summary = RunSummary(phase="join")

    assert send_webhook(URL, summary) is True
    mock_post.assert_called_once_with(URL, json={"text": f"k3sctl: {summary.headline()}"}, timeout=10)


@patch("k3sctl.utils.notify.requests.post")
def test_error_status_returns_false(mock_post):
    mock_post.return_value = Mock(status_code=500, text="boom")

    assert send_webhook(URL, RunSummary(phase="join")) is False


@patch("k3sctl.utils.notify.requests.post", side_effect=requests.ConnectionError("refused"))
def test_connection_error_is_swallowed(mock_post):
    assert send_webhook(URL, RunSummary(phase="up")) is False
