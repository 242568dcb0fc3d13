"""
Display ranking of automation suggestions.

Suggestions are ordered high → medium → low. The sort is stable, so
suggestions of equal priority keep the order the analysis produced them in.

Usage:
    from ambient.agent.priority import rank_automations
    top = rank_automations(analysis.automations, limit=5)
"""

from typing import Optional, Sequence

from ambient.agent.schemas import AutomationSuggestion

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def priority_rank(suggestion: AutomationSuggestion) -> int:
    """Sort key: lower ranks first. Unrecognized priorities sort last."""
    return PRIORITY_ORDER.get(suggestion.priority, len(PRIORITY_ORDER))


def rank_automations(
    automations: Sequence[AutomationSuggestion],
    limit: Optional[int] = 5,
) -> list[AutomationSuggestion]:
    """
    Stable-sort suggestions by priority and keep the first `limit`.

    Args:
        automations: Suggestions in analysis order.
        limit: How many to keep. None keeps all.

    Raises:
        ValueError: If limit is negative.
    """
    if limit is not None and limit < 0:
        raise ValueError("limit must be zero or positive")
    ranked = sorted(automations, key=priority_rank)
    return ranked if limit is None else ranked[:limit]
