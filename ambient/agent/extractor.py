"""
Per-email classification and insight extraction.

Each email goes through a small state machine:

    sent email      → sent-mail extractor                     → insights
    received email  → classifier → known label → one extractor → insights
                                 → unknown label               → no insights

The classification of a received email is kept on the result exactly as the
model returned it, including labels outside the known set. Failures never
leave the email boundary: a broken email yields a failed EmailResult and the
rest of the batch carries on.

Usage:
    from ambient.agent.extractor import EmailProcessor

    processor = EmailProcessor(llm_client=llm, registry=registry)
    results, stats = await processor.process_batch(emails, user_context)
"""

import asyncio
import logging
from typing import Callable, Optional, Sequence

from pydantic import ValidationError

from ambient.agent.categories import CategoryConfig
from ambient.agent.prompts import (
    EXTRACTOR_PROMPTS,
    PromptKey,
    PromptRegistry,
    format_email_content,
    format_email_metadata,
    format_user_context,
)
from ambient.agent.schemas import (
    BatchStats,
    Classification,
    Email,
    EmailLabel,
    EmailResult,
    Insight,
    Provenance,
    UserContext,
    utc_now,
)
from ambient.llm.client import LLMClient
from ambient.logging.audit import audit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class EmailProcessor:
    """Turns individual emails into classified, category-tagged insights."""

    def __init__(
        self,
        llm_client: LLMClient,
        registry: PromptRegistry,
        categories: Optional[CategoryConfig] = None,
    ):
        self._llm = llm_client
        self._registry = registry
        self._categories = categories or CategoryConfig.load()

    # =========================================================================
    # SINGLE EMAIL
    # =========================================================================

    async def process(self, email: Email, user_context: Optional[UserContext] = None) -> EmailResult:
        """
        Classify (received mail only) and extract insights from one email.

        Never raises. Any failure is reported as EmailResult(success=False)
        with no insights and no classification.
        """
        try:
            variables = self._variables(email, user_context)

            if email.provenance == Provenance.SENT:
                insights = await self._extract(PromptKey.EXTRACT_SENT, email, variables)
                self._log_processed(email, None, insights)
                return EmailResult(email_id=email.id, insights=insights)

            classification = await self._classify(email, variables)
            label = classification.kind

            if label is EmailLabel.UNKNOWN:
                logger.warning(
                    "email.label.unknown",
                    extra={
                        "action": "email.label.unknown",
                        "email_id": email.id,
                        "label": classification.label,
                    },
                )
                return EmailResult(email_id=email.id, insights=[], classification=classification)

            insights = await self._extract(EXTRACTOR_PROMPTS[label], email, variables)
            self._log_processed(email, classification, insights)
            return EmailResult(
                email_id=email.id,
                insights=insights,
                classification=classification,
            )

        except Exception as e:
            logger.error(
                "email.process.failed",
                extra={
                    "action": "email.process.failed",
                    "email_id": email.id,
                    "provenance": email.provenance.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return EmailResult(
                email_id=email.id,
                insights=[],
                classification=None,
                success=False,
                error=str(e),
            )

    # =========================================================================
    # BATCH — All emails of a batch run concurrently
    # =========================================================================

    async def process_batch(
        self,
        emails: Sequence[Email],
        user_context: Optional[UserContext] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> tuple[list[EmailResult], BatchStats]:
        """
        Process every email of the batch concurrently.

        Args:
            emails: The batch. The caller decides how large it may be.
            user_context: Who the profile is about.
            on_progress: Called once per finished email, success or not,
                         with (emails finished, batch size).

        Returns:
            (results in input order, batch stats)
        """
        total = len(emails)
        finished = 0

        async def run(email: Email) -> EmailResult:
            nonlocal finished
            result = await self.process(email, user_context)
            finished += 1
            if on_progress is not None:
                on_progress(finished, total)
            return result

        results = list(await asyncio.gather(*(run(email) for email in emails)))

        successful = sum(1 for r in results if r.success)
        stats = BatchStats(
            total=total,
            successful=successful,
            failed=total - successful,
            total_insights=sum(len(r.insights) for r in results),
        )
        audit.info(
            "extraction.batch.completed",
            total=stats.total,
            successful=stats.successful,
            failed=stats.failed,
            total_insights=stats.total_insights,
        )
        return results, stats

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _variables(self, email: Email, user_context: Optional[UserContext]) -> dict:
        """The input every classifier and extractor prompt receives."""
        return {
            "categories": self._categories.prompt_list(),
            "todays_date": utc_now().date().isoformat(),
            "email_date": email.date,
            "email_metadata": format_email_metadata(email),
            "email_content": format_email_content(email),
            "user_context": format_user_context(user_context),
        }

    async def _classify(self, email: Email, variables: dict) -> Classification:
        output = await self._llm.generate(
            self._registry.get(PromptKey.CLASSIFY),
            variables,
            purpose="classify",
        )
        return Classification(
            label=output.classification,
            confidence=output.confidence,
            reasoning=output.reasoning,
        )

    async def _extract(self, key: PromptKey, email: Email, variables: dict) -> list[Insight]:
        output = await self._llm.generate(self._registry.get(key), variables, purpose=key.value)

        insights = []
        for inference in output.inferences:
            try:
                insights.append(
                    Insight(
                        source_email_id=email.id,
                        categories=inference.categories,
                        text=inference.insight,
                        confidence=inference.confidence,
                        evidence=inference.evidence,
                    )
                )
            except ValidationError:
                # Empty or blank category lists land here
                logger.warning(
                    "email.inference.skipped",
                    extra={"action": "email.inference.skipped", "email_id": email.id},
                )
        return insights

    @staticmethod
    def _log_processed(
        email: Email,
        classification: Optional[Classification],
        insights: list[Insight],
    ) -> None:
        audit.info(
            "email.processed",
            email_id=email.id,
            provenance=email.provenance.value,
            label=classification.kind.value if classification else None,
            insight_count=len(insights),
        )
