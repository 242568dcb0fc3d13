"""Tests for the prompt registry and prompt formatting helpers."""

from datetime import datetime, timezone

import pytest
from pydantic import BaseModel

from ambient.agent.prompts import (
    EXTRACTOR_PROMPTS,
    PromptKey,
    PromptRegistry,
    PromptRegistryError,
    PromptSpec,
    build_default_registry,
    confidence_language,
    format_email_content,
    format_insights,
    format_profile_files,
    format_user_context,
)
from ambient.agent.schemas import (
    Email,
    EmailLabel,
    Insight,
    ProfileFile,
    Provenance,
    UserContext,
)


class Out(BaseModel):
    value: str


class TestRegistry:
    def test_default_registry_has_every_prompt(self):
        registry = build_default_registry()
        assert len(registry) == len(PromptKey)
        for key in PromptKey:
            assert key in registry

    def test_every_known_label_has_an_extractor(self):
        known = [label for label in EmailLabel if label is not EmailLabel.UNKNOWN]
        assert set(EXTRACTOR_PROMPTS) == set(known)
        assert EmailLabel.UNKNOWN not in EXTRACTOR_PROMPTS

    def test_extractors_share_their_inputs(self):
        """Every extractor takes the same variables, so dispatch needs no special cases."""
        registry = build_default_registry()
        expected = registry.get(PromptKey.EXTRACT_SENT).placeholders
        for key in EXTRACTOR_PROMPTS.values():
            assert registry.get(key).placeholders == expected
        assert expected == {
            "todays_date", "email_date", "email_metadata", "email_content", "user_context",
            "categories",
        }

    def test_token_limit_overrides(self):
        registry = build_default_registry(max_tokens={"blend": 42})
        assert registry.get(PromptKey.BLEND).max_tokens == 42

    def test_missing_prompt_fails_loading(self):
        with pytest.raises(PromptRegistryError, match="No prompt registered"):
            PromptRegistry([PromptSpec(PromptKey.CLASSIFY, "s", "{x}", Out, 10)])

    def test_unreadable_template_fails_loading(self):
        specs = [PromptSpec(key, "s", "ok", Out, 10) for key in PromptKey]
        specs[0] = PromptSpec(PromptKey.CLASSIFY, "s", "broken {", Out, 10)
        with pytest.raises(PromptRegistryError, match="Unreadable template"):
            PromptRegistry(specs)

    def test_render_requires_every_placeholder(self):
        registry = build_default_registry()
        with pytest.raises(PromptRegistryError, match="missing variables"):
            registry.get(PromptKey.COMPILE).render(user_context="Ada")


class TestFormatting:
    @pytest.mark.parametrize("score,phrase", [
        (0.95, "very confident"),
        (0.85, "confident"),
        (0.75, "likely"),
        (0.65, "probably"),
        (0.55, "possibly"),
        (0.2, "may"),
    ])
    def test_confidence_language(self, score, phrase):
        assert confidence_language(score) == phrase

    def test_insights_never_show_raw_scores(self):
        insight = Insight(
            source_email_id="e1",
            categories=["goals"],
            text="Training for a marathon",
            confidence=0.83,
            evidence="signed up for the Berlin marathon",
        )
        text = format_insights([insight])
        assert "(confident) Training for a marathon" in text
        assert "0.83" not in text

    def test_profile_files_are_sorted_sections(self):
        files = {
            "personal": ProfileFile(category="personal", content="Likes sailing."),
            "basic": ProfileFile(category="basic", content="Lives in Lisbon."),
        }
        text = format_profile_files(files)
        assert text.index("## basic") < text.index("## personal")

    def test_user_context(self):
        assert format_user_context(None) == "the user"
        user = UserContext(email="ada@example.com", first_name="Ada", last_name="Lovelace")
        assert format_user_context(user) == "Ada Lovelace (ada@example.com)"
        assert format_user_context(UserContext(email="ada@example.com")) == "ada@example.com"

    def test_email_content(self):
        email = Email(
            id="e1",
            provenance=Provenance.SENT,
            subject="Lunch",
            sender="ada@example.com",
            recipient="bob@example.com",
            body="See you at noon.",
            timestamp=datetime(2025, 5, 1, 12, tzinfo=timezone.utc),
        )
        text = format_email_content(email)
        assert "Subject: Lunch" in text
        assert text.endswith("Email Body:\nSee you at noon.")
