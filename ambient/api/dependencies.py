"""
FastAPI dependencies: Gmail credentials and shared application state.
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, Request

from ambient.agent.engine import ProfilePipeline
from ambient.agent.progress import ProgressStreams
from ambient.gmail.client import GmailClient
from ambient.llm.client import LLMClient
from ambient.storage.store import ProfileStore

logger = logging.getLogger(__name__)


async def require_gmail_token(authorization: Optional[str] = Header(default=None)) -> str:
    """
    FastAPI dependency that extracts the Gmail access token.

    The caller obtains the token through its own OAuth flow and sends it as
    `Authorization: Bearer <token>`.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        logger.warning(
            "auth.invalid_header",
            extra={"action": "auth.invalid_header", "scheme": scheme.lower()},
        )
        raise HTTPException(status_code=401, detail="Expected a Bearer token")

    return token.strip()


async def get_gmail(token: str = Depends(require_gmail_token)) -> AsyncIterator[GmailClient]:
    """A Gmail client for this request, closed when the request finishes."""
    gmail = GmailClient(access_token=token)
    try:
        yield gmail
    finally:
        await gmail.aclose()


def get_store(request: Request) -> ProfileStore:
    return request.app.state.store


def get_progress_streams(request: Request) -> ProgressStreams:
    return request.app.state.progress


def get_pipeline(request: Request) -> ProfilePipeline:
    """A pipeline over the shared store and prompt registry, with a fresh LLM client."""
    return ProfilePipeline(
        llm_client=LLMClient(),
        registry=request.app.state.registry,
        store=request.app.state.store,
        categories=request.app.state.categories,
    )
