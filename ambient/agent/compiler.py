"""
Final compilation over the per-category profile files.

Two independent tasks read the same snapshot of profile files:
- compile: a word-limited narrative profile of the user
- analyze_automation: automation opportunities suggested by the profile

compile_all runs both concurrently and waits for both to settle, success or
failure, before returning. Results are stored next to the category files
under the keys "_full" and "_automation". Insight categories never start
with an underscore, so no category file can take either key.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from ambient.agent.blender import RESERVED_PREFIX
from ambient.agent.prompts import (
    PromptKey,
    PromptRegistry,
    format_profile_files,
    format_user_context,
)
from ambient.agent.schemas import (
    AutomationAnalysis,
    FullProfile,
    ProfileFile,
    UserContext,
    utc_now,
)
from ambient.llm.client import LLMClient
from ambient.logging.audit import audit
from ambient.storage.store import ProfileStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

FULL_PROFILE_KEY = f"{RESERVED_PREFIX}full"
AUTOMATION_KEY = f"{RESERVED_PREFIX}automation"
COMPILED_KEYS = (FULL_PROFILE_KEY, AUTOMATION_KEY)


@dataclass
class CompileResult:
    """What compile_all produced. A None field means that task failed."""
    full_profile: Optional[FullProfile] = None
    automation: Optional[AutomationAnalysis] = None
    errors: int = 0


class ProfileCompiler:
    """Compiles category files into the full profile and the automation analysis."""

    def __init__(self, llm_client: LLMClient, registry: PromptRegistry, store: ProfileStore):
        self._llm = llm_client
        self._registry = registry
        self._store = store

    async def compile(
        self,
        profile_files: Mapping[str, ProfileFile],
        user_context: Optional[UserContext] = None,
        word_limit: int = 250,
    ) -> FullProfile:
        """Write the narrative profile. Output beyond word_limit is cut off."""
        output = await self._llm.generate(
            self._registry.get(PromptKey.COMPILE),
            {
                "user_context": format_user_context(user_context),
                "todays_date": utc_now().date().isoformat(),
                "profile_files": format_profile_files(profile_files),
                "word_limit": word_limit,
            },
            purpose="compile",
        )
        profile = FullProfile.bounded(output.content, word_limit)
        if profile.content != output.content.strip():
            logger.warning(
                "profile.compile.truncated",
                extra={"action": "profile.compile.truncated", "word_limit": word_limit},
            )
        return profile

    async def analyze_automation(
        self,
        profile_files: Mapping[str, ProfileFile],
        user_context: Optional[UserContext] = None,
    ) -> AutomationAnalysis:
        """Find automation opportunities in the profile."""
        return await self._llm.generate(
            self._registry.get(PromptKey.ANALYZE_AUTOMATION),
            {
                "user_context": format_user_context(user_context),
                "todays_date": utc_now().date().isoformat(),
                "profile_files": format_profile_files(profile_files),
            },
            purpose="analyze_automation",
        )

    async def compile_all(
        self,
        session_id: str,
        profile_files: Mapping[str, ProfileFile],
        user_context: Optional[UserContext] = None,
        word_limit: int = 250,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompileResult:
        """
        Run compile and analyze_automation concurrently over one snapshot.

        Returns only after both tasks have settled. Each success is stored;
        each failure is logged and counted in CompileResult.errors.
        """
        snapshot = dict(profile_files)
        total = 2
        finished = 0

        async def settle(coro):
            nonlocal finished
            try:
                return await coro
            finally:
                finished += 1
                if on_progress is not None:
                    on_progress(finished, total)

        full, automation = await asyncio.gather(
            settle(self.compile(snapshot, user_context, word_limit)),
            settle(self.analyze_automation(snapshot, user_context)),
            return_exceptions=True,
        )

        result = CompileResult()

        if isinstance(full, BaseException):
            self._log_failure("compile", full)
            result.errors += 1
        else:
            result.full_profile = full
            self._save(session_id, FULL_PROFILE_KEY, full.content)

        if isinstance(automation, BaseException):
            self._log_failure("analyze_automation", automation)
            result.errors += 1
        else:
            result.automation = automation
            self._save(session_id, AUTOMATION_KEY, automation.model_dump_json(indent=2))

        audit.info(
            "profile.compiled",
            source_files=len(snapshot),
            full_profile=result.full_profile is not None,
            automation_count=len(result.automation.automations) if result.automation else 0,
            errors=result.errors,
        )
        return result

    def _save(self, session_id: str, key: str, content: str) -> None:
        existing = self._store.get(session_id, key)
        now = utc_now()
        self._store.set(
            session_id,
            ProfileFile(
                category=key,
                content=content,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            ),
        )

    @staticmethod
    def _log_failure(task: str, error: BaseException) -> None:
        logger.error(
            "profile.compile.failed",
            extra={
                "action": "profile.compile.failed",
                "task": task,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )


def load_automation(file: Optional[ProfileFile]) -> Optional[AutomationAnalysis]:
    """Read a stored automation analysis back into its model."""
    if file is None:
        return None
    return AutomationAnalysis.model_validate_json(file.content)
