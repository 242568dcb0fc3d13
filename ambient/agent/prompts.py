"""
All LLM prompt templates for the profile pipeline.

This is the single file to edit when you need to change how the AI
classifies emails, extracts insights, or writes profile documents.

Each prompt is declared once as a PromptSpec (system text, user template,
output schema, token limit) and loaded into a PromptRegistry at startup.
Loading validates every template and schema, so a broken prompt stops the
service before any run starts instead of failing one call at a time.

IMPORTANT:
- Never put actual email content in this file — these are templates.
- The {placeholders} are filled in at runtime by the pipeline stages.
- Literal braces in templates must be doubled ({{ and }}).
"""

import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from pydantic import BaseModel

from ambient.agent.schemas import (
    AutomationAnalysis,
    ClassificationOutput,
    ContentOutput,
    Email,
    EmailLabel,
    ExtractionOutput,
    Insight,
    ProfileFile,
    UserContext,
)
from ambient.config import settings


class PromptKey(str, Enum):
    """Every (stage, label) prompt the pipeline can run."""
    CLASSIFY = "received/classify"
    EXTRACT_SENT = "sent/extract"
    EXTRACT_NEWSLETTER = "received/extract-newsletter"
    EXTRACT_SERVICE = "received/extract-service"
    EXTRACT_MARKETING = "received/extract-marketing"
    EXTRACT_PERSONAL = "received/extract-personal"
    EXTRACT_PROFESSIONAL = "received/extract-professional"
    BLEND = "profile/blend"
    COMPILE = "profile/compile"
    ANALYZE_AUTOMATION = "profile/analyze-automation"


# Label -> extractor dispatch table. UNKNOWN deliberately has no entry.
EXTRACTOR_PROMPTS: dict[EmailLabel, PromptKey] = {
    EmailLabel.NEWSLETTER: PromptKey.EXTRACT_NEWSLETTER,
    EmailLabel.SERVICE: PromptKey.EXTRACT_SERVICE,
    EmailLabel.MARKETING: PromptKey.EXTRACT_MARKETING,
    EmailLabel.PERSONAL: PromptKey.EXTRACT_PERSONAL,
    EmailLabel.PROFESSIONAL: PromptKey.EXTRACT_PROFESSIONAL,
}

class PromptRegistryError(Exception):
    """Raised when a prompt or its schema cannot be loaded or rendered."""
    pass


@dataclass(frozen=True)
class PromptSpec:
    """A loaded prompt: a pure function from input variables to a rendered request."""
    key: PromptKey
    system: str
    template: str
    output_schema: type[BaseModel]
    max_tokens: int
    placeholders: frozenset = field(default=frozenset())

    def render(self, **variables) -> str:
        missing = self.placeholders - variables.keys()
        if missing:
            raise PromptRegistryError(
                f"Prompt {self.key.value} is missing variables: {sorted(missing)}"
            )
        return self.template.format(**variables)


class PromptRegistry:
    """Prompts loaded once at startup, looked up by key for every call."""

    def __init__(self, specs: Iterable[PromptSpec]):
        self._specs: dict[PromptKey, PromptSpec] = {}
        for spec in specs:
            self._specs[spec.key] = _validated(spec)

        missing = [k.value for k in PromptKey if k not in self._specs]
        if missing:
            raise PromptRegistryError(f"No prompt registered for: {missing}")

    def get(self, key: PromptKey) -> PromptSpec:
        try:
            return self._specs[key]
        except KeyError:
            raise PromptRegistryError(f"Unknown prompt: {key}") from None

    def __contains__(self, key: PromptKey) -> bool:
        return key in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def _validated(spec: PromptSpec) -> PromptSpec:
    """Parse the template's placeholders and make sure the schema compiles."""
    try:
        names = {
            name for _, name, _, _ in string.Formatter().parse(spec.template)
            if name
        }
    except ValueError as e:
        raise PromptRegistryError(f"Unreadable template for {spec.key.value}: {e}") from e

    try:
        spec.output_schema.model_json_schema()
    except Exception as e:
        raise PromptRegistryError(f"Unreadable schema for {spec.key.value}: {e}") from e

    return PromptSpec(
        key=spec.key,
        system=spec.system,
        template=spec.template,
        output_schema=spec.output_schema,
        max_tokens=spec.max_tokens,
        placeholders=frozenset(names),
    )


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================

CLASSIFY_SYSTEM = (
    "You sort incoming emails into exactly one type. "
    "Be decisive and base the label on what the email is, not on who sent it."
)

EXTRACT_SYSTEM = (
    "You build a private profile of a person from their email. "
    "Only infer facts about the user, never about other people unless the fact "
    "describes the user's relationship to them. "
    "Prefer fewer, well-supported inferences over many weak ones."
)

PROFILE_SYSTEM = (
    "You maintain a personal profile written in concise markdown. "
    "You rewrite documents in full; you never append notes or changelogs. "
    "Express certainty through wording, never through numbers or percentages."
)

AUTOMATION_SYSTEM = (
    "You are an automation consultant. You look for repetitive, rule-shaped "
    "work in a person's life that an assistant could take over."
)

# =============================================================================
# SHARED BLOCKS
# =============================================================================

EMAIL_BLOCK = """\
Today's date: {todays_date}
Email date: {email_date}

Email metadata:
{email_metadata}

Email:
{email_content}"""

EXTRACTION_RULES = """\
Rules for inferences:
- Each inference is one atomic fact about {user_context}.
- Tag each inference with one or more of these categories: {categories}.
- confidence is between 0 and 1. Use 0.9+ only for facts stated outright.
- evidence is a short quote or paraphrase from the email.
- Return an empty list when the email says nothing about the user."""

# =============================================================================
# USER PROMPTS
# =============================================================================

CLASSIFY_USER = """\
Classify this received email as exactly one of:
- newsletter: editorial content the user subscribed to
- service: receipts, account notices, shipping, security alerts, bills
- marketing: promotions, sales and advertising
- personal: written by a person to the user about non-work matters
- professional: written by a person about work, business or career

""" + EMAIL_BLOCK

EXTRACT_SENT_USER = """\
This email was WRITTEN BY the user. Infer what it reveals about how they \
communicate, what they work on, who they deal with and what they care about.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

EXTRACT_NEWSLETTER_USER = """\
The user RECEIVED this newsletter. Subscriptions reveal interests, industry \
and hobbies. Do not treat the newsletter's opinions as the user's.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

EXTRACT_SERVICE_USER = """\
The user RECEIVED this service email. Infer which accounts, providers, \
subscriptions, purchases and locations it reveals. Never record account \
numbers, passwords or codes.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

EXTRACT_MARKETING_USER = """\
The user RECEIVED this marketing email. Marketing is weak evidence: infer only \
which brands the user has a relationship with, and keep confidence low unless \
the email references the user's own activity.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

EXTRACT_PERSONAL_USER = """\
The user RECEIVED this personal email. Infer relationships, family, plans, \
places and personal interests of the user.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

EXTRACT_PROFESSIONAL_USER = """\
The user RECEIVED this work email. Infer role, employer, projects, \
responsibilities, colleagues and working patterns of the user.

""" + EXTRACTION_RULES + "\n\n" + EMAIL_BLOCK

BLEND_USER = """\
Rewrite the "{category}" section of the profile of {user_context}.
Today's date: {todays_date}

What this section covers:
{category_guidance}

Current section (may be empty):
{existing_content}

New observations, each prefixed with how sure we are:
{new_insights}

Write the complete replacement section in markdown. Merge the new observations \
with what is already there, drop anything the new observations contradict, \
and keep the qualifying language (e.g. "very likely", "may") that matches each \
observation's certainty."""

COMPILE_USER = """\
Combine these profile sections about {user_context} into one narrative profile.
Today's date: {todays_date}

{profile_files}

Write at most {word_limit} words of markdown. Lead with who the person is, \
then what they do, then what matters to them."""

ANALYZE_AUTOMATION_USER = """\
Read the profile sections about {user_context} and propose automations an \
assistant with email access could run for them.
Today's date: {todays_date}

{profile_files}

For each automation give a name, a category, a priority (high, medium or low), \
a description, a complexity, a trigger, concrete actions, the evidence from \
the profile, and the expected impact. Finish with a one-paragraph summary."""

# =============================================================================
# FORMATTING HELPERS — How runtime data is turned into prompt text
# =============================================================================

def confidence_language(confidence: float) -> str:
    """Map a 0-1 confidence score to qualifying language."""
    if confidence >= 0.9:
        return "very confident"
    if confidence >= 0.8:
        return "confident"
    if confidence >= 0.7:
        return "likely"
    if confidence >= 0.6:
        return "probably"
    if confidence >= 0.5:
        return "possibly"
    return "may"


def format_user_context(user: Optional[UserContext]) -> str:
    if user is None:
        return "the user"
    if user.email and user.display_name != user.email:
        return f"{user.display_name} ({user.email})"
    return user.display_name


def format_email_metadata(email: Email) -> str:
    return "\n".join(f"- {key}: {value}" for key, value in email.metadata.items() if value)


def format_email_content(email: Email) -> str:
    """Render an email as headers + plain-text body."""
    lines = [
        f"Subject: {email.subject}",
        f"From: {email.sender}",
        f"To: {email.recipient}",
    ]
    if email.cc:
        lines.append(f"Cc: {email.cc}")
    lines.append(f"Date: {email.timestamp.isoformat()}")
    lines.append(f"Labels: {', '.join(email.label_ids) or 'none'}")
    lines.append("")
    lines.append("Email Body:")
    lines.append(email.body)
    return "\n".join(lines)


def format_insights(insights: Iterable[Insight]) -> str:
    """Render insights with qualifying language instead of raw scores."""
    lines = []
    for insight in insights:
        line = f"- ({confidence_language(insight.confidence)}) {insight.text}"
        if insight.evidence:
            line += f" [evidence: {insight.evidence}]"
        lines.append(line)
    return "\n".join(lines) or "- (none)"


def format_profile_files(files: Mapping[str, ProfileFile]) -> str:
    """Render category documents as titled sections in a stable order."""
    parts = []
    for category in sorted(files):
        parts.append(f"## {category}\n{files[category].content.strip()}")
    return "\n\n".join(parts)


# =============================================================================
# REGISTRY
# =============================================================================

def build_default_registry(max_tokens: Optional[Mapping[str, int]] = None) -> PromptRegistry:
    """
    Load every pipeline prompt into a registry.

    Args:
        max_tokens: Optional overrides keyed by "classify", "extract", "blend",
                    "compile" and "automation". Defaults come from settings.
    """
    limits = {
        "classify": settings.anthropic_max_tokens_classify,
        "extract": settings.anthropic_max_tokens_extract,
        "blend": settings.anthropic_max_tokens_blend,
        "compile": settings.anthropic_max_tokens_compile,
        "automation": settings.anthropic_max_tokens_automation,
    }
    limits.update(max_tokens or {})

    extractors = {
        PromptKey.EXTRACT_SENT: EXTRACT_SENT_USER,
        PromptKey.EXTRACT_NEWSLETTER: EXTRACT_NEWSLETTER_USER,
        PromptKey.EXTRACT_SERVICE: EXTRACT_SERVICE_USER,
        PromptKey.EXTRACT_MARKETING: EXTRACT_MARKETING_USER,
        PromptKey.EXTRACT_PERSONAL: EXTRACT_PERSONAL_USER,
        PromptKey.EXTRACT_PROFESSIONAL: EXTRACT_PROFESSIONAL_USER,
    }

    specs = [
        PromptSpec(PromptKey.CLASSIFY, CLASSIFY_SYSTEM, CLASSIFY_USER,
                   ClassificationOutput, limits["classify"]),
        PromptSpec(PromptKey.BLEND, PROFILE_SYSTEM, BLEND_USER,
                   ContentOutput, limits["blend"]),
        PromptSpec(PromptKey.COMPILE, PROFILE_SYSTEM, COMPILE_USER,
                   ContentOutput, limits["compile"]),
        PromptSpec(PromptKey.ANALYZE_AUTOMATION, AUTOMATION_SYSTEM, ANALYZE_AUTOMATION_USER,
                   AutomationAnalysis, limits["automation"]),
    ]
    specs.extend(
        PromptSpec(key, EXTRACT_SYSTEM, template, ExtractionOutput, limits["extract"])
        for key, template in extractors.items()
    )

    return PromptRegistry(specs)
