"""Tests for webhook retry policy and delivery."""

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from media_transcoder.config import WebhookConfig
from media_transcoder.models import GeneratedOutput, SourceMetadata
from media_transcoder.webhooks import (
    WebhookNotifier,
    completed_payload,
    failed_payload,
    redact_url,
    retry_delay,
    should_retry,
)

URL = "https://hooks.example.com/transcode?secret=abc"


def make_notifier(handler, sleeps=None, **config):
    transport = httpx.MockTransport(handler)
    return WebhookNotifier(
        WebhookConfig(**config),
        client_factory=lambda: httpx.Client(transport=transport),
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
    )


class TestRetryPolicy:
    def test_linear_delay_is_capped(self):
        assert [retry_delay(a, 1.0, 5.0) for a in range(1, 8)] == [1, 2, 3, 4, 5, 5, 5]

    def test_should_retry(self):
        assert should_retry(1, 2)
        assert should_retry(2, 2)
        assert not should_retry(3, 2)
        assert not should_retry(1, 0)

    @given(
        attempt=st.integers(min_value=1, max_value=1000),
        base=st.floats(min_value=0.0, max_value=10.0),
        cap=st.floats(min_value=0.0, max_value=60.0),
    )
    def test_delay_never_exceeds_cap(self, attempt, base, cap):
        assert 0.0 <= retry_delay(attempt, base, cap) <= cap


class TestWebhookNotifier:
    def test_success_first_attempt(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(204)

        assert make_notifier(handler).notify(URL, {"jobId": "j1"}) is True
        assert len(calls) == 1
        assert calls[0].method == "POST"
        assert calls[0].headers["content-type"] == "application/json"
        assert b'"jobId"' in calls[0].content

    def test_retry_ceiling(self):
        """max_retries=2 against an always-failing endpoint means exactly 3 calls."""
        calls = []
        sleeps = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        notifier = make_notifier(handler, sleeps=sleeps, max_retries=2)
        assert notifier.notify(URL, {"jobId": "j1"}) is False
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_recovers_after_transport_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        assert make_notifier(handler).notify(URL, {}) is True
        assert len(calls) == 2

    def test_timeout_counts_as_failure(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        assert make_notifier(handler, max_retries=1).notify(URL, {}) is False
        assert len(calls) == 2

    def test_exhaustion_is_logged(self, caplog):
        notifier = make_notifier(lambda r: httpx.Response(502), max_retries=0)
        with caplog.at_level("WARNING"):
            notifier.notify(URL, {})
        assert "failed after 1 attempts" in caplog.text

    def test_logs_never_carry_the_query_string(self, caplog):
        notifier = make_notifier(lambda r: httpx.Response(500), max_retries=1)
        with caplog.at_level("DEBUG", logger="media_transcoder.webhooks"):
            notifier.notify(URL, {})

        records = [r for r in caplog.records if r.name == "media_transcoder.webhooks"]
        assert records
        for record in records:
            assert "secret" not in record.getMessage()
            assert "secret" not in str(getattr(record, "url", ""))
        assert records[-1].url == "https://hooks.example.com/transcode"

    @pytest.mark.parametrize("url,enabled", [(None, True), ("", True), (URL, False)])
    def test_noop_without_url_or_when_disabled(self, url, enabled):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        assert make_notifier(handler, enabled=enabled).notify(url, {}) is False
        assert calls == []


class TestPayloads:
    def test_completed_payload(self):
        output = GeneratedOutput(
            id="720p_h264",
            format="mp4",
            video_codec="libx264",
            audio_codec="aac",
            storage_key="video/clip/j1/0-720p_h264.mp4",
            size=10,
        )
        payload = completed_payload("j1", "uploads/clip.mp4", [output], SourceMetadata(duration=3.0))

        assert payload["status"] == "completed"
        assert payload["jobId"] == "j1"
        assert payload["mediaRef"] == "uploads/clip.mp4"
        assert payload["outputs"][0]["storage_key"] == output.storage_key
        assert payload["metadata"]["source"]["duration"] == 3.0

    def test_failed_payload(self):
        assert failed_payload("j1", "m", "boom") == {
            "jobId": "j1",
            "mediaRef": "m",
            "status": "failed",
            "error": "boom",
        }


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://hooks.example.com/t?secret=abc#frag", "https://hooks.example.com/t"),
        ("https://user:pw@hooks.example.com:8443/t", "https://hooks.example.com:8443/t"),
        ("http://hooks.example.com/plain", "http://hooks.example.com/plain"),
    ],
)
def test_redact_url(url, expected):
    assert redact_url(url) == expected
