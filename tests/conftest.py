"""Shared fixtures: a scripted LLM, a fake mailbox and sample emails."""

import asyncio
import base64
from datetime import datetime, timezone

import pytest

from ambient.agent.prompts import PromptKey, build_default_registry
from ambient.agent.schemas import (
    AutomationAnalysis,
    AutomationSuggestion,
    ClassificationOutput,
    ContentOutput,
    Email,
    ExtractionOutput,
    InferenceOutput,
    Provenance,
    UserContext,
)
from ambient.llm.client import LLMError
from ambient.logging.config import setup_logging


class FakeLLM:
    """
    Stands in for LLMClient.

    `handlers` maps a PromptKey to either a fixed output, an exception to
    raise, or a callable (plain or async) taking the prompt variables and
    returning either.
    """

    def __init__(self, handlers=None, configured=True):
        self.handlers = dict(handlers or {})
        self.calls = []
        self.configured = configured

    async def generate(self, prompt, variables, purpose=None):
        self.calls.append((prompt.key, variables))
        if prompt.key not in self.handlers:
            raise LLMError(f"no handler for {prompt.key.value}")
        handler = self.handlers[prompt.key]
        result = handler(variables) if callable(handler) else handler
        if asyncio.iscoroutine(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result

    def keys_called(self):
        return [key for key, _ in self.calls]

    def get_session_stats(self):
        return {"total_cost_usd": 0.0, "total_calls": len(self.calls)}


def make_email(email_id="e1", provenance=Provenance.INBOX, subject="Hello", **overrides) -> Email:
    fields = dict(
        id=email_id,
        thread_id=f"thread-{email_id}",
        provenance=provenance,
        subject=subject,
        sender="someone@example.com",
        sender_domain="example.com",
        recipient="ada@example.com",
        body=f"Body of {email_id}",
        timestamp=datetime(2025, 5, 1, 9, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Email(**fields)


def classification(label: str, confidence: float = 0.9) -> ClassificationOutput:
    return ClassificationOutput(classification=label, confidence=confidence, reasoning="test")


def extraction(*inferences) -> ExtractionOutput:
    """inferences: (categories, text, confidence) tuples."""
    return ExtractionOutput(inferences=[
        InferenceOutput(categories=list(cats), insight=text, confidence=conf, evidence="quote")
        for cats, text, conf in inferences
    ])


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def registry():
    return build_default_registry()


USER = UserContext(email="ada@example.com", first_name="Ada")

ANALYSIS = AutomationAnalysis(
    summary="Reading and logistics.",
    automations=[
        AutomationSuggestion(
            name="File receipts", category="finance", priority="low", description="Label receipts.",
        ),
        AutomationSuggestion(
            name="Digest newsletters", category="reading", priority="high", description="Weekly digest.",
        ),
    ],
)


def happy_handlers() -> dict:
    """Received mail is newsletters, sent mail is personal, every later stage succeeds."""
    return {
        PromptKey.CLASSIFY: classification("newsletter"),
        PromptKey.EXTRACT_NEWSLETTER: extraction((["professional"], "Reads about databases", 0.7)),
        PromptKey.EXTRACT_SENT: extraction((["personal"], "Plans a trip to Japan", 0.8)),
        PromptKey.BLEND: lambda v: ContentOutput(content=f"# {v['category']}\nUpdated."),
        PromptKey.COMPILE: ContentOutput(content="Ada reads about databases."),
        PromptKey.ANALYZE_AUTOMATION: ANALYSIS,
    }


class FakeGmail:
    """A mailbox with a few sent and received messages. Ids look like "s1", "r2"."""

    def __init__(self, sent=("s1",), inbox=("r1", "r2"), authenticated=True, threads=None):
        self.mailboxes = {"in:sent": list(sent), "in:inbox": list(inbox)}
        self.authenticated = authenticated
        self.threads = threads or {}
        self.listed = []

    async def list_message_ids(self, query, max_results=10):
        self.listed.append((query, max_results))
        return self.mailboxes.get(query, [])[:max_results]

    async def get_message(self, message_id):
        body = base64.urlsafe_b64encode(f"Body {message_id}".encode()).decode()
        return {
            "id": message_id,
            "threadId": self.threads.get(message_id, f"thread-{message_id}"),
            "internalDate": str(1714557600000 + int(message_id[1:])),
            "payload": {
                "mimeType": "text/plain",
                "headers": [{"name": "Subject", "value": f"Subject {message_id}"}],
                "body": {"data": body},
            },
        }

    async def get_user_context(self):
        return USER

    async def aclose(self):
        pass


class Rendezvous:
    """
    Holds every caller of wait() until `parties` callers are inside at once.

    Code that runs its callers one after another never gets there, and the
    wait fails with a timeout instead of hanging the test.
    """

    def __init__(self, parties: int, timeout: float = 2.0):
        self.parties = parties
        self.timeout = timeout
        self.arrived = 0
        self._all_here = None

    async def wait(self):
        if self._all_here is None:
            self._all_here = asyncio.Event()
        self.arrived += 1
        if self.arrived >= self.parties:
            self._all_here.set()
        await asyncio.wait_for(self._all_here.wait(), self.timeout)
