"""
Data models for the profile pipeline.

These Pydantic models define the shape of all data flowing between stages:
fetched emails, classifications, insights, per-category profile files and
the compiled outputs. Models whose name ends in "Output" are the schemas the
LLM is constrained to; they are converted into domain models by the stage
that called the model.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

NO_CONTENT = "No content available"


class Provenance(str, Enum):
    """Which mailbox an email came from."""
    INBOX = "inbox"
    SENT = "sent"


class EmailLabel(str, Enum):
    """
    Closed set of received-email labels. Each known label selects exactly one
    extractor; UNKNOWN covers anything else the classifier returns.
    """
    NEWSLETTER = "newsletter"
    SERVICE = "service"
    MARKETING = "marketing"
    PERSONAL = "personal"
    PROFESSIONAL = "professional"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "EmailLabel":
        """Map a raw classifier label to the enum, UNKNOWN when unrecognized."""
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Stage(str, Enum):
    """Pipeline stages that publish progress."""
    FETCH = "fetch"
    INSIGHTS = "insights"
    PROFILE = "profile"
    COMPILE = "compile"


# =============================================================================
# EMAIL
# =============================================================================

class Email(BaseModel):
    """A message fetched from Gmail and normalized to plain text."""

    id: str = Field(description="Gmail message ID")
    thread_id: str = Field(default="")
    provenance: Provenance = Field(default=Provenance.INBOX)
    subject: str = Field(default="")
    sender: str = Field(default="")
    sender_domain: str = Field(default="unknown")
    recipient: str = Field(default="")
    cc: str = Field(default="")
    reply_to: str = Field(default="")
    label_ids: list[str] = Field(default_factory=list)
    snippet: str = Field(default="")
    body: str = Field(default=NO_CONTENT)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.fromtimestamp(0, tz=timezone.utc)
    )

    @field_validator("body", mode="before")
    @classmethod
    def _body_never_blank(cls, value):
        if value is None or not str(value).strip():
            return NO_CONTENT
        return value

    @property
    def date(self) -> str:
        """The email's date as YYYY-MM-DD."""
        return self.timestamp.date().isoformat()

    @property
    def metadata(self) -> dict:
        """Header block passed to every extractor alongside the body."""
        return {
            "subject": self.subject,
            "sender": self.sender,
            "sender_domain": self.sender_domain,
            "to": self.recipient,
            "cc": self.cc,
            "reply_to": self.reply_to,
            "thread_id": self.thread_id,
            "email_type": self.provenance.value,
        }


class UserContext(BaseModel):
    """Who the profile is about. Passed into every prompt."""
    email: str = Field(default="")
    first_name: str = Field(default="")
    last_name: str = Field(default="")

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email or "the user"


# =============================================================================
# CLASSIFICATION & INSIGHTS
# =============================================================================

class Classification(BaseModel):
    """
    Label assigned to a received email. `label` is kept exactly as the model
    returned it; `kind` is the normalized enum used for dispatch.
    """
    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = Field(default="")

    @property
    def kind(self) -> EmailLabel:
        return EmailLabel.parse(self.label)


class Insight(BaseModel):
    """An atomic inferred fact about the user, tagged with one or more categories."""
    source_email_id: str
    categories: list[str] = Field(min_length=1)
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = Field(default="")

    @field_validator("categories")
    @classmethod
    def _normalize_categories(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for category in value:
            # A leading underscore marks compiled outputs in the store
            name = category.strip().lower().lstrip("_").strip()
            if name and name not in seen:
                seen.append(name)
        if not seen:
            raise ValueError("an insight needs at least one non-blank category")
        return seen


class EmailResult(BaseModel):
    """Outcome of running one email through classification + extraction."""
    email_id: str
    insights: list[Insight] = Field(default_factory=list)
    classification: Optional[Classification] = None
    success: bool = True
    error: Optional[str] = None


class BatchStats(BaseModel):
    """Counts reported after an extraction batch."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    total_insights: int = 0


# =============================================================================
# PROFILE FILES & COMPILED OUTPUTS
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProfileFile(BaseModel):
    """One category document. Always replaced as a whole, never appended to."""
    category: str
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


Priority = Literal["high", "medium", "low"]


class AutomationSuggestion(BaseModel):
    """A candidate task-automation opportunity."""
    name: str
    category: str
    priority: Priority
    description: str
    complexity: str = Field(default="")
    trigger: str = Field(default="")
    actions: list[str] = Field(default_factory=list)
    evidence: str = Field(default="")
    impact: str = Field(default="")


class AutomationAnalysis(BaseModel):
    """Automation opportunities derived from the profile files."""
    summary: str
    automations: list[AutomationSuggestion] = Field(default_factory=list)


def truncate_words(text: str, limit: int) -> str:
    """Cut text down to at most `limit` whitespace-separated words."""
    words = text.split()
    if len(words) <= limit:
        return text.strip()
    return " ".join(words[:limit])


class FullProfile(BaseModel):
    """The compiled narrative profile, bounded by a word limit."""
    content: str
    word_limit: int = Field(default=250, gt=0)

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    @classmethod
    def bounded(cls, content: str, word_limit: int) -> "FullProfile":
        return cls(content=truncate_words(content, word_limit), word_limit=word_limit)


class RunResult(BaseModel):
    """
    What one pipeline run returns. The counts are always present so callers
    can tell a clean run from a degraded one.
    """
    session_id: str
    total_emails: int = 0
    successful_emails: int = 0
    error_count: int = 0
    total_categories: int = 0
    total_insights: int = 0
    profile_files: dict[str, ProfileFile] = Field(default_factory=dict)
    full_profile: Optional[FullProfile] = None
    automation: Optional[AutomationAnalysis] = None
    compiled: bool = False

    @property
    def degraded(self) -> bool:
        return self.error_count > 0


# =============================================================================
# LLM OUTPUT SCHEMAS
# =============================================================================

class ClassificationOutput(BaseModel):
    """Schema for the received-email classifier."""
    classification: str = Field(
        description="One of: newsletter, service, marketing, personal, professional"
    )
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = Field(description="One or two sentences explaining the label")


class InferenceOutput(BaseModel):
    """One inference about the user as returned by an extractor."""
    # May be empty; EmailProcessor drops untagged inferences one at a time
    categories: list[str] = Field(
        default_factory=list,
        description="Profile categories this inference belongs to",
    )
    insight: str = Field(description="The inferred fact, written about the user")
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = Field(description="Short quote or paraphrase supporting the inference")


class ExtractionOutput(BaseModel):
    """Schema shared by every extractor."""
    inferences: list[InferenceOutput] = Field(default_factory=list)


class ContentOutput(BaseModel):
    """Schema for blend and compile: a single markdown document."""
    content: str = Field(description="The complete markdown document")


# =============================================================================
# API REQUESTS
# =============================================================================

class BuildRequest(BaseModel):
    """Request to build (or refine) a session's profile."""
    session_id: str = Field(min_length=1, max_length=128)
    sent_count: Optional[int] = Field(default=None, ge=0, le=500)
    received_count: Optional[int] = Field(default=None, ge=0, le=500)
