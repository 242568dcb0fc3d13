"""
Per-category profile synthesis.

For each category, the blender asks the model to rewrite the whole category
document from the existing document plus the new insights. The result always
replaces the stored file; nothing is appended. Categories are blended
concurrently and fail independently.

Usage:
    from ambient.agent.blender import ProfileBlender

    blender = ProfileBlender(llm_client=llm, registry=registry, store=store)
    files = await blender.blend_all("session-1", insights_by_category, user_context)
"""

import asyncio
import logging
from typing import Callable, Mapping, Optional, Sequence

from ambient.agent.categories import CategoryConfig
from ambient.agent.prompts import (
    PromptKey,
    PromptRegistry,
    format_insights,
    format_user_context,
)
from ambient.agent.schemas import Insight, ProfileFile, UserContext, utc_now
from ambient.llm.client import LLMClient, LLMError
from ambient.logging.audit import audit
from ambient.storage.store import ProfileStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

EMPTY_SECTION = "(empty: this section has not been written yet)"

# Store keys starting with this belong to the compiler
RESERVED_PREFIX = "_"


class ProfileBlender:
    """Writes one profile file per category."""

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
        self._categories = categories or CategoryConfig.load()

    async def blend(
        self,
        category: str,
        new_insights: Sequence[Insight],
        existing_content: Optional[str] = None,
        user_context: Optional[UserContext] = None,
    ) -> str:
        """
        Produce the full replacement content for one category.

        Raises:
            ValueError: If the category name is reserved for compiled outputs.
            LLMError: If the model call fails or returns an empty document.
        """
        if category.startswith(RESERVED_PREFIX):
            raise ValueError(f"Category name {category!r} is reserved")

        output = await self._llm.generate(
            self._registry.get(PromptKey.BLEND),
            {
                "category": category,
                "user_context": format_user_context(user_context),
                "todays_date": utc_now().date().isoformat(),
                "category_guidance": self._categories.guidance(category),
                "existing_content": (existing_content or "").strip() or EMPTY_SECTION,
                "new_insights": format_insights(new_insights),
            },
            purpose="blend",
        )
        content = output.content.strip()
        if not content:
            raise LLMError(f"Model returned an empty document for category {category}")
        return content

    async def blend_all(
        self,
        session_id: str,
        insights_by_category: Mapping[str, Sequence[Insight]],
        user_context: Optional[UserContext] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, ProfileFile]:
        """
        Blend every category concurrently and store each success.

        Prior content comes from the store, so re-running a session refines
        its existing documents. A failed category is logged and missing from
        the result; its previously stored file (if any) is left untouched.

        Returns:
            {category: ProfileFile} for the categories that were written.
        """
        total = len(insights_by_category)
        finished = 0

        async def run(category: str, insights: Sequence[Insight]) -> Optional[ProfileFile]:
            nonlocal finished
            try:
                existing = self._store.get(session_id, category)
                content = await self.blend(
                    category,
                    insights,
                    existing.content if existing else None,
                    user_context,
                )
                now = utc_now()
                file = ProfileFile(
                    category=category,
                    content=content,
                    created_at=existing.created_at if existing else now,
                    updated_at=now,
                )
                self._store.set(session_id, file)
                audit.info(
                    "profile.category.blended",
                    category=category,
                    insight_count=len(insights),
                    replaced_existing=existing is not None,
                )
                return file
            except Exception as e:
                logger.error(
                    "profile.category.failed",
                    extra={
                        "action": "profile.category.failed",
                        "category": category,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                return None
            finally:
                finished += 1
                if on_progress is not None:
                    on_progress(finished, total)

        categories = list(insights_by_category)
        results = await asyncio.gather(
            *(run(category, insights_by_category[category]) for category in categories)
        )
        return {
            category: file
            for category, file in zip(categories, results)
            if file is not None
        }
