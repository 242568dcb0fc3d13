"""Tests for the compile stage: full profile + automation analysis."""

import asyncio

from ambient.agent.compiler import AUTOMATION_KEY, FULL_PROFILE_KEY, ProfileCompiler, load_automation
from ambient.agent.prompts import PromptKey
from ambient.agent.schemas import AutomationAnalysis, AutomationSuggestion, ContentOutput, ProfileFile
from ambient.llm.client import LLMError
from ambient.storage.store import InMemoryProfileStore

from conftest import FakeLLM, Rendezvous

FILES = {
    "basic": ProfileFile(category="basic", content="Lives in Lisbon."),
    "goals": ProfileFile(category="goals", content="Training for a marathon."),
}

ANALYSIS = AutomationAnalysis(
    summary="Mostly logistics.",
    automations=[
        AutomationSuggestion(
            name="Receipt filing",
            category="finance",
            priority="medium",
            description="File receipts into a folder.",
        ),
    ],
)


class TestCompile:
    def test_word_limit_is_enforced(self, registry):
        llm = FakeLLM({PromptKey.COMPILE: ContentOutput(content="word " * 40)})
        compiler = ProfileCompiler(llm, registry, InMemoryProfileStore())

        profile = asyncio.run(compiler.compile(FILES, word_limit=25))

        assert profile.word_count == 25
        assert llm.calls[0][1]["word_limit"] == 25
        assert "## basic" in llm.calls[0][1]["profile_files"]


class TestCompileAll:
    def test_both_outputs_are_stored(self, registry):
        store = InMemoryProfileStore()
        llm = FakeLLM({
            PromptKey.COMPILE: ContentOutput(content="Ada lives in Lisbon and runs."),
            PromptKey.ANALYZE_AUTOMATION: ANALYSIS,
        })
        compiler = ProfileCompiler(llm, registry, store)
        ticks = []

        result = asyncio.run(compiler.compile_all(
            "s1", FILES, word_limit=250, on_progress=lambda d, t: ticks.append((d, t)),
        ))

        assert result.errors == 0
        assert result.full_profile.content == "Ada lives in Lisbon and runs."
        assert store.get("s1", FULL_PROFILE_KEY).content == "Ada lives in Lisbon and runs."
        assert load_automation(store.get("s1", AUTOMATION_KEY)) == ANALYSIS
        assert ticks == [(1, 2), (2, 2)]

    def test_waits_for_both_even_when_one_fails(self, registry):
        """A fast failure must not cut the slower task short."""
        finished = []

        async def slow_analysis():
            await asyncio.sleep(0.01)
            finished.append("automation")
            return ANALYSIS

        class SlowLLM(FakeLLM):
            async def generate(self, prompt, variables, purpose=None):
                if prompt.key is PromptKey.ANALYZE_AUTOMATION:
                    return await slow_analysis()
                return await super().generate(prompt, variables, purpose)

        store = InMemoryProfileStore()
        compiler = ProfileCompiler(SlowLLM({PromptKey.COMPILE: LLMError("boom")}), registry, store)

        result = asyncio.run(compiler.compile_all("s1", FILES))

        assert finished == ["automation"]
        assert result.errors == 1
        assert result.full_profile is None
        assert result.automation == ANALYSIS
        assert store.get("s1", FULL_PROFILE_KEY) is None
        assert store.get("s1", AUTOMATION_KEY) is not None

    def test_compile_and_analysis_overlap(self, registry):
        together = Rendezvous(2)

        async def compile_profile(variables):
            await together.wait()
            return ContentOutput(content="Ada lives in Lisbon.")

        async def analyze(variables):
            await together.wait()
            return ANALYSIS

        llm = FakeLLM({PromptKey.COMPILE: compile_profile, PromptKey.ANALYZE_AUTOMATION: analyze})
        compiler = ProfileCompiler(llm, registry, InMemoryProfileStore())

        result = asyncio.run(compiler.compile_all("s1", FILES))

        assert together.arrived == 2
        assert result.errors == 0
        assert result.full_profile.content == "Ada lives in Lisbon."
        assert result.automation == ANALYSIS

    def test_both_fail(self, registry):
        compiler = ProfileCompiler(FakeLLM(), registry, InMemoryProfileStore())
        result = asyncio.run(compiler.compile_all("s1", FILES))
        assert result.errors == 2
        assert result.full_profile is None
        assert result.automation is None


def test_load_automation_missing():
    assert load_automation(None) is None
