"""
Rate-limited, batched, retrying retrieval of Gmail messages.

Gmail enforces a per-user quota, so messages are fetched in fixed-size
chunks: the ids of one chunk are requested concurrently, chunks run one
after another, and the fetcher pauses between chunks. Each request is
retried on its own; a message that still fails is dropped and logged, and
the rest of the batch carries on.

Usage:
    from ambient.gmail.fetcher import fetch_batch

    emails = await fetch_batch(
        gmail, ids, Provenance.INBOX,
        concurrency_limit=20, inter_batch_delay=0.25, max_retries=3,
        on_progress=lambda done, total: print(done, total),
    )
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from ambient.agent.schemas import Email, Provenance
from ambient.gmail.parser import parse_message
from ambient.logging.audit import audit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# Response fragments Gmail uses for quota and throttling errors.
RATE_LIMIT_MARKERS = ("ratelimit", "rate limit", "quota", "resource_exhausted")


class MessageSource(Protocol):
    """Anything that can fetch one raw message by id (GmailClient in production)."""

    def get_message(self, message_id: str) -> Awaitable[dict]:
        ...


def is_rate_limited(error: BaseException) -> bool:
    """True for HTTP 429, and for 403s whose body mentions a rate limit or quota."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return True
        if status == 403:
            body = error.response.text.lower()
            return any(marker in body for marker in RATE_LIMIT_MARKERS)
        return False
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    """Split items into consecutive chunks of at most `size`."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def fetch_with_retry(
    source: MessageSource,
    message_id: str,
    max_retries: int = 3,
    retry_delay: float = 1.0,
) -> dict:
    """
    Fetch one raw message, retrying failures.

    Attempt i (0-based) that fails waits retry_delay * 2**i when the failure
    is rate-limit shaped, otherwise a fixed retry_delay. At most max_retries
    retries follow the first attempt; the last error is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await source.get_message(message_id)
        except Exception as e:
            if attempt >= max_retries:
                raise
            throttled = is_rate_limited(e)
            wait = retry_delay * (2 ** attempt) if throttled else retry_delay
            logger.warning(
                "gmail.fetch.retry",
                extra={
                    "action": "gmail.fetch.retry",
                    "email_id": message_id,
                    "attempt": attempt + 1,
                    "rate_limited": throttled,
                    "wait_seconds": wait,
                    "error_type": type(e).__name__,
                },
            )
            await asyncio.sleep(wait)
            attempt += 1


async def _fetch_one(
    source: MessageSource,
    message_id: str,
    provenance: Provenance,
    max_retries: int,
    retry_delay: float,
) -> Optional[Email]:
    try:
        raw = await fetch_with_retry(source, message_id, max_retries, retry_delay)
    except Exception as e:
        logger.error(
            "gmail.fetch.dropped",
            extra={
                "action": "gmail.fetch.dropped",
                "email_id": message_id,
                "max_retries": max_retries,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        return None
    return parse_message(raw, provenance, message_id=message_id)


async def fetch_batch(
    source: MessageSource,
    ids: Sequence[str],
    provenance: Provenance,
    concurrency_limit: int = 20,
    inter_batch_delay: float = 0.25,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    on_progress: Optional[ProgressCallback] = None,
) -> list[Email]:
    """
    Fetch and normalize a set of messages.

    Args:
        source: Message source (GmailClient).
        ids: Message ids to fetch.
        provenance: Mailbox the ids were listed from.
        concurrency_limit: Ids fetched concurrently per chunk.
        inter_batch_delay: Seconds to pause between chunks.
        max_retries: Retries per message after the first attempt.
        retry_delay: Base delay for retries, in seconds.
        on_progress: Called after every chunk with
                     (emails fetched so far, total requested).

    Returns:
        The emails that were fetched, in request order. Never raises for
        individual message failures; those messages are simply absent.
    """
    if not ids:
        return []

    start = time.monotonic()
    total = len(ids)
    chunks = chunked(ids, concurrency_limit)
    emails: list[Email] = []

    for index, chunk in enumerate(chunks):
        results = await asyncio.gather(
            *(_fetch_one(source, mid, provenance, max_retries, retry_delay) for mid in chunk)
        )
        emails.extend(email for email in results if email is not None)

        if on_progress is not None:
            on_progress(len(emails), total)

        if index < len(chunks) - 1 and inter_batch_delay > 0:
            await asyncio.sleep(inter_batch_delay)

    audit.info(
        "gmail.batch.fetched",
        provenance=provenance.value,
        requested=total,
        fetched=len(emails),
        dropped=total - len(emails),
        chunks=len(chunks),
        latency_ms=int((time.monotonic() - start) * 1000),
    )
    return emails
