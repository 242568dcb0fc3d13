"""
Pipeline engine — the orchestrator for profile building.

Stages, in order:

    fetch     list + fetch sent and received mail (rate-limited, retried)
    insights  classify and extract insights, per email, in outer batches
    profile   group insights by category and blend one file per category
    compile   full profile + automation analysis, joined before finishing

Each stage consumes the completed output of the previous one. Failures of
single emails, categories or compile tasks are isolated and counted;
missing credentials and empty mailboxes stop the run before any stage.

The engine does NOT read application settings. Everything tunable arrives
in an explicit PipelineConfig, built at the edge (see
PipelineConfig.from_settings).

Usage:
    from ambient.agent.engine import ProfilePipeline, PipelineConfig

    pipeline = ProfilePipeline(llm_client=llm, registry=registry, store=store)
    result = await pipeline.run("session-1", gmail, PipelineConfig(), progress)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from ambient.agent.aggregator import group_by_category
from ambient.agent.blender import ProfileBlender
from ambient.agent.categories import CategoryConfig
from ambient.agent.compiler import ProfileCompiler
from ambient.agent.extractor import EmailProcessor
from ambient.agent.progress import ProgressStream
from ambient.agent.prompts import PromptRegistry
from ambient.agent.schemas import (
    Email,
    EmailResult,
    Provenance,
    RunResult,
    Stage,
    UserContext,
)
from ambient.gmail.client import GmailClient
from ambient.gmail.fetcher import fetch_batch
from ambient.gmail.parser import dedupe_by_thread
from ambient.llm.client import LLMClient
from ambient.logging.audit import audit
from ambient.logging.config import session_id_var
from ambient.storage.store import ProfileStore

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for errors that stop a whole run."""
    pass


class MissingCredentialsError(PipelineError):
    """No LLM API key or no Gmail token: nothing can be fetched or generated."""
    pass


class NoEmailsError(PipelineError):
    """The run has no emails to process."""
    pass


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for one run. Passed explicitly into every stage that needs them."""
    sent_count: int = 10
    received_count: int = 10
    fetch_concurrency: int = 20
    fetch_batch_delay: float = 0.25
    fetch_max_retries: int = 3
    fetch_retry_delay: float = 1.0
    outer_batch_size: int = 200
    word_limit: int = 250
    dedupe_threads: bool = True
    received_query: str = "in:inbox"
    sent_query: str = "in:sent"

    def __post_init__(self):
        if self.sent_count < 0 or self.received_count < 0:
            raise ValueError("sent_count and received_count must not be negative")
        if self.fetch_concurrency < 1:
            raise ValueError("fetch_concurrency must be at least 1")
        if self.outer_batch_size < 1:
            raise ValueError("outer_batch_size must be at least 1")
        if self.word_limit < 1:
            raise ValueError("word_limit must be at least 1")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "PipelineConfig":
        """Build a config from application settings, with per-request overrides."""
        values = dict(
            sent_count=settings.sent_count,
            received_count=settings.received_count,
            fetch_concurrency=settings.fetch_concurrency,
            fetch_batch_delay=settings.fetch_batch_delay_ms / 1000,
            fetch_max_retries=settings.fetch_max_retries,
            fetch_retry_delay=settings.fetch_retry_delay_ms / 1000,
            outer_batch_size=settings.outer_batch_size,
            word_limit=settings.profile_word_limit,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _offset_reporter(
    report: Optional[Callable[[int, int], None]],
    base: int,
    total: int,
) -> Optional[Callable[[int, int], None]]:
    """Map a sub-batch's (done, batch_total) onto the stage-wide counter."""
    if report is None:
        return None

    def on_progress(done: int, _batch_total: int) -> None:
        report(base + done, total)

    return on_progress


class ProfilePipeline:
    """
    Orchestrates fetch → insights → profile → compile for one session.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        registry: PromptRegistry,
        store: ProfileStore,
        categories: Optional[CategoryConfig] = None,
    ):
        self._llm = llm_client
        self._registry = registry
        self._store = store
        categories = categories or CategoryConfig.load()
        self.processor = EmailProcessor(llm_client, registry, categories)
        self.blender = ProfileBlender(llm_client, registry, store, categories)
        self.compiler = ProfileCompiler(llm_client, registry, store)

        logger.info(
            "pipeline.initialized",
            extra={"action": "pipeline.initialized", "prompt_count": len(registry)},
        )

    # =========================================================================
    # FULL RUN
    # =========================================================================

    async def run(
        self,
        session_id: str,
        gmail: GmailClient,
        config: PipelineConfig,
        progress: Optional[ProgressStream] = None,
    ) -> RunResult:
        """
        Build (or refine) the profile of the mailbox owner.

        Raises:
            MissingCredentialsError: No LLM key or no Gmail token.
            NoEmailsError: The mailbox returned nothing to process.
        """
        token = session_id_var.set(session_id)
        try:
            if not self._llm.configured:
                raise MissingCredentialsError("No Anthropic API key configured")
            if not gmail.authenticated:
                raise MissingCredentialsError("No Gmail access token provided")

            user_context = await gmail.get_user_context()
            emails = await self.fetch_emails(gmail, config, progress)
            return await self.build_profile(session_id, emails, user_context, config, progress)
        finally:
            session_id_var.reset(token)

    # =========================================================================
    # FETCH
    # =========================================================================

    async def fetch_emails(
        self,
        gmail: GmailClient,
        config: PipelineConfig,
        progress: Optional[ProgressStream] = None,
    ) -> list[Email]:
        """
        List and fetch the sent and received emails of one run.

        Both listings share one `fetch` progress counter: the total is the
        number of ids listed, `processed` is emails fetched so far.
        """
        sent_ids = (
            await gmail.list_message_ids(config.sent_query, config.sent_count)
            if config.sent_count else []
        )
        received_ids = (
            await gmail.list_message_ids(config.received_query, config.received_count)
            if config.received_count else []
        )
        total = len(sent_ids) + len(received_ids)
        report = progress.reporter(Stage.FETCH) if progress else None
        if report:
            report(0, total)

        fetch_options = dict(
            concurrency_limit=config.fetch_concurrency,
            inter_batch_delay=config.fetch_batch_delay,
            max_retries=config.fetch_max_retries,
            retry_delay=config.fetch_retry_delay,
        )
        sent = await fetch_batch(
            gmail, sent_ids, Provenance.SENT,
            on_progress=_offset_reporter(report, 0, total),
            **fetch_options,
        )
        received = await fetch_batch(
            gmail, received_ids, Provenance.INBOX,
            on_progress=_offset_reporter(report, len(sent), total),
            **fetch_options,
        )

        emails = sent + received
        if config.dedupe_threads:
            emails = dedupe_by_thread(emails)

        audit.info(
            "pipeline.fetch.completed",
            listed=total,
            sent=len(sent),
            received=len(received),
            after_dedupe=len(emails),
        )
        return emails

    # =========================================================================
    # BUILD — insights → profile files → compiled outputs
    # =========================================================================

    async def build_profile(
        self,
        session_id: str,
        emails: Sequence[Email],
        user_context: Optional[UserContext],
        config: PipelineConfig,
        progress: Optional[ProgressStream] = None,
    ) -> RunResult:
        """
        Run insights, profile and compile over already-fetched emails.

        Raises:
            NoEmailsError: If `emails` is empty.
        """
        if not emails:
            raise NoEmailsError("No emails to process")

        start = time.monotonic()
        total = len(emails)

        # --- insights: outer batches run one after another ---
        insights_report = progress.reporter(Stage.INSIGHTS) if progress else None
        if insights_report:
            insights_report(0, total)

        results: list[EmailResult] = []
        for offset in range(0, total, config.outer_batch_size):
            batch = emails[offset:offset + config.outer_batch_size]
            batch_results, _ = await self.processor.process_batch(
                batch,
                user_context,
                on_progress=_offset_reporter(insights_report, offset, total),
            )
            results.extend(batch_results)

        successful_emails = sum(1 for r in results if r.success)
        failed_emails = total - successful_emails
        insights = [insight for r in results for insight in r.insights]

        # --- profile: one file per category ---
        by_category = group_by_category(insights)
        profile_report = progress.reporter(Stage.PROFILE) if progress else None
        if profile_report:
            profile_report(0, len(by_category))

        files = await self.blender.blend_all(
            session_id, by_category, user_context, on_progress=profile_report
        )
        failed_categories = len(by_category) - len(files)

        # --- compile: only when at least one category was written ---
        compiled = None
        if files:
            compile_report = progress.reporter(Stage.COMPILE) if progress else None
            if compile_report:
                compile_report(0, 2)
            compiled = await self.compiler.compile_all(
                session_id,
                files,
                user_context,
                word_limit=config.word_limit,
                on_progress=compile_report,
            )

        result = RunResult(
            session_id=session_id,
            total_emails=total,
            successful_emails=successful_emails,
            error_count=failed_emails + failed_categories + (compiled.errors if compiled else 0),
            total_categories=len(by_category),
            total_insights=len(insights),
            profile_files=files,
            full_profile=compiled.full_profile if compiled else None,
            automation=compiled.automation if compiled else None,
            compiled=compiled is not None,
        )

        audit.info(
            "pipeline.run.completed",
            total_emails=result.total_emails,
            successful_emails=result.successful_emails,
            error_count=result.error_count,
            total_categories=result.total_categories,
            written_categories=len(files),
            total_insights=result.total_insights,
            compiled=result.compiled,
            llm_cost_usd=self._llm.get_session_stats()["total_cost_usd"],
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return result
