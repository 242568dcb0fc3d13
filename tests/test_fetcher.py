"""
Tests for batched, rate-limited fetching.

A fake message source stands in for GmailClient; asyncio.sleep is patched
so backoff and inter-chunk delays are recorded instead of waited out.
"""

import asyncio
import base64

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from ambient.agent.schemas import Provenance
from ambient.gmail.fetcher import chunked, fetch_batch, fetch_with_retry, is_rate_limited
from ambient.logging.config import setup_logging


def http_error(status: int, text: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://gmail.test/users/me/messages/x")
    response = httpx.Response(status, request=request, text=text)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def raw_message(message_id: str) -> dict:
    body = base64.urlsafe_b64encode(f"Body of {message_id}".encode()).decode()
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "internalDate": "1714557600000",
        "payload": {
            "mimeType": "text/plain",
            "headers": [{"name": "Subject", "value": f"Subject {message_id}"}],
            "body": {"data": body},
        },
    }


class FakeSource:
    """Returns raw messages; ids in `failures` always raise their error."""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.calls: dict[str, int] = {}

    async def get_message(self, message_id: str) -> dict:
        self.calls[message_id] = self.calls.get(message_id, 0) + 1
        if message_id in self.failures:
            raise self.failures[message_id]
        return raw_message(message_id)


class InFlightSource:
    """Yields to the event loop mid-request and records how requests overlap."""

    def __init__(self):
        self.current = 0
        self.peak = 0
        self.finished: set[str] = set()
        self.finished_at_start: dict[str, set[str]] = {}

    async def get_message(self, message_id: str) -> dict:
        self.finished_at_start[message_id] = set(self.finished)
        self.current += 1
        self.peak = max(self.peak, self.current)
        for _ in range(3):
            await asyncio.sleep(0)
        self.current -= 1
        self.finished.add(message_id)
        return raw_message(message_id)


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def sleep():
    with patch("ambient.gmail.fetcher.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        yield mock_sleep


class TestFetchBatch:
    def test_chunks_drop_failures_and_report_progress(self, sleep):
        """45 ids at concurrency 20: three chunks, two permanent failures dropped."""
        ids = [f"id-{n}" for n in range(45)]
        source = FakeSource(failures={
            "id-5": http_error(500),
            "id-44": http_error(404),
        })
        progress = []

        emails = asyncio.run(fetch_batch(
            source, ids, Provenance.INBOX,
            concurrency_limit=20,
            inter_batch_delay=0.25,
            max_retries=3,
            retry_delay=1.0,
            on_progress=lambda done, total: progress.append((done, total)),
        ))

        assert len(emails) == 43
        assert {e.id for e in emails} == set(ids) - {"id-5", "id-44"}
        assert [e.id for e in emails] == [i for i in ids if i not in ("id-5", "id-44")]
        assert all(e.provenance == Provenance.INBOX for e in emails)
        assert progress == [(19, 45), (39, 45), (43, 45)]

        # Each permanent failure: one attempt plus three retries.
        assert source.calls["id-5"] == 4
        assert source.calls["id-44"] == 4

        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays.count(0.25) == 2
        assert delays.count(1.0) == 6

    def test_empty_ids(self, sleep):
        progress = []
        emails = asyncio.run(fetch_batch(
            FakeSource(), [], Provenance.SENT,
            on_progress=lambda done, total: progress.append((done, total)),
        ))

        assert emails == []
        assert progress == []
        sleep.assert_not_awaited()

    def test_single_chunk_has_no_delay(self, sleep):
        emails = asyncio.run(fetch_batch(
            FakeSource(), ["a", "b"], Provenance.SENT, concurrency_limit=20
        ))

        assert [e.id for e in emails] == ["a", "b"]
        assert all(e.provenance == Provenance.SENT for e in emails)
        sleep.assert_not_awaited()


    def test_at_most_one_chunk_in_flight(self):
        """45 ids at concurrency 20: peak of 20 requests, chunks never overlap."""
        ids = [f"id-{n}" for n in range(45)]
        source = InFlightSource()

        emails = asyncio.run(fetch_batch(
            source, ids, Provenance.INBOX, concurrency_limit=20, inter_batch_delay=0.0,
        ))

        assert len(emails) == 45
        assert source.peak == 20
        chunk_of = {mid: n // 20 for n, mid in enumerate(ids)}
        for mid, finished_before in source.finished_at_start.items():
            earlier = {m for m in ids if chunk_of[m] < chunk_of[mid]}
            assert earlier <= finished_before


class TestFetchWithRetry:
    def test_rate_limit_backs_off_exponentially(self, sleep):
        attempts = []

        class Source:
            async def get_message(self, message_id):
                attempts.append(message_id)
                if len(attempts) < 3:
                    raise http_error(429)
                return raw_message(message_id)

        raw = asyncio.run(fetch_with_retry(Source(), "m", max_retries=3, retry_delay=1.0))

        assert raw["id"] == "m"
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    def test_other_errors_use_fixed_delay(self, sleep):
        attempts = []

        class Source:
            async def get_message(self, message_id):
                attempts.append(message_id)
                if len(attempts) < 3:
                    raise http_error(503)
                return raw_message(message_id)

        asyncio.run(fetch_with_retry(Source(), "m", max_retries=3, retry_delay=1.0))

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]

    def test_gives_up_after_max_retries(self, sleep):
        source = FakeSource(failures={"m": http_error(429)})

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(fetch_with_retry(source, "m", max_retries=2, retry_delay=0.5))

        assert source.calls["m"] == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]


class TestRateLimitDetection:
    def test_429(self):
        assert is_rate_limited(http_error(429))

    def test_403_quota(self):
        assert is_rate_limited(http_error(403, '{"error": {"reason": "userRateLimitExceeded"}}'))
        assert is_rate_limited(http_error(403, "Quota exceeded for quota metric"))

    def test_plain_403_and_500(self):
        assert not is_rate_limited(http_error(403, "Insufficient permission"))
        assert not is_rate_limited(http_error(500))

    def test_non_http_errors_by_message(self):
        assert is_rate_limited(RuntimeError("Rate limit hit"))
        assert not is_rate_limited(RuntimeError("connection reset"))


def test_chunked():
    assert chunked(["a", "b", "c"], 2) == [["a", "b"], ["c"]]
    with pytest.raises(ValueError):
        chunked(["a"], 0)
