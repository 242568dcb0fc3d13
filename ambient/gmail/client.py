"""
Gmail REST API client.

The pipeline depends on a minimal read contract only:
- list message ids matching a search query
- get one raw message (format=full: headers + base64url, possibly multipart body)
- look up who the mailbox belongs to

Token acquisition and refresh happen outside this service; the client is
constructed with an already-issued bearer token.

This client does NOT retry or throttle. Backoff and batching live in
ambient.gmail.fetcher so a single get_message() call stays a single request.

Usage:
    from ambient.gmail.client import GmailClient

    gmail = GmailClient(access_token="ya29...")
    ids = await gmail.list_message_ids("in:sent", max_results=10)
    raw = await gmail.get_message(ids[0])
    await gmail.aclose()
"""

import logging
import time
from typing import Optional

import httpx

from ambient.agent.schemas import UserContext
from ambient.config import settings
from ambient.logging.audit import audit

logger = logging.getLogger(__name__)

# Gmail caps a single list page at 500 ids.
MAX_PAGE_SIZE = 500


class GmailClient:
    """
    Async Gmail client bound to one access token.

    One instance is used for one run; call aclose() when done.
    """

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        userinfo_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = access_token
        self._base = (base_url or settings.gmail_base_url).rstrip("/")
        self._userinfo_url = userinfo_url or settings.gmail_userinfo_url
        self._http = httpx.AsyncClient(
            timeout=30.0,
            transport=transport,
            headers={"Authorization": f"Bearer {self._token}"},
        )

    @property
    def authenticated(self) -> bool:
        """True when the client holds a token (validity is checked by Google)."""
        return bool(self._token)

    async def aclose(self) -> None:
        """Close the HTTP client. Call when done."""
        await self._http.aclose()

    # =========================================================================
    # MESSAGE LISTING — With pagination
    # =========================================================================

    async def list_message_ids(self, query: str = "", max_results: int = 10) -> list[str]:
        """
        List message ids matching a Gmail search query, newest first.

        Follows nextPageToken until max_results ids are collected or no pages
        remain. HTTP errors propagate: without ids there is nothing to fetch.

        Args:
            query: Gmail search syntax, e.g. "in:sent" or "in:inbox newer_than:90d".
            max_results: Maximum number of ids to return.
        """
        start = time.monotonic()
        ids: list[str] = []
        page_token: Optional[str] = None
        pages = 0

        while len(ids) < max_results:
            params = {
                "q": query,
                "maxResults": min(MAX_PAGE_SIZE, max_results - len(ids)),
            }
            if page_token:
                params["pageToken"] = page_token

            resp = await self._http.get(f"{self._base}/users/me/messages", params=params)
            resp.raise_for_status()
            data = resp.json()
            pages += 1

            for message in data.get("messages", []):
                if message.get("id"):
                    ids.append(message["id"])

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        ids = ids[:max_results]
        audit.info(
            "gmail.messages.listed",
            query=query,
            count=len(ids),
            pages=pages,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return ids

    # =========================================================================
    # SINGLE MESSAGE
    # =========================================================================

    async def get_message(self, message_id: str) -> dict:
        """
        Fetch one full message resource.

        Raises:
            httpx.HTTPStatusError: For non-2xx responses (429 when throttled).
            httpx.HTTPError: For transport failures.
        """
        resp = await self._http.get(
            f"{self._base}/users/me/messages/{message_id}",
            params={"format": "full"},
        )
        resp.raise_for_status()
        return resp.json()

    # =========================================================================
    # MAILBOX OWNER
    # =========================================================================

    async def get_user_context(self) -> UserContext:
        """
        Get the mailbox owner's name and address.

        Tries the OAuth user-info endpoint (needs the profile scope) and falls
        back to the Gmail profile address. Never raises: a missing name only
        makes prompts less personal.
        """
        first_name = ""
        last_name = ""
        email = ""

        try:
            resp = await self._http.get(self._userinfo_url)
            resp.raise_for_status()
            data = resp.json()
            first_name = data.get("given_name") or ""
            last_name = data.get("family_name") or ""
            email = data.get("email") or ""
        except httpx.HTTPError:
            logger.warning(
                "gmail.userinfo.failed",
                extra={"action": "gmail.userinfo.failed"},
            )

        if not email:
            try:
                resp = await self._http.get(f"{self._base}/users/me/profile")
                resp.raise_for_status()
                email = resp.json().get("emailAddress") or ""
            except httpx.HTTPError:
                logger.warning(
                    "gmail.profile.failed",
                    extra={"action": "gmail.profile.failed"},
                )

        return UserContext(email=email, first_name=first_name, last_name=last_name)
