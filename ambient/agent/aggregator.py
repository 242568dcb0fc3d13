"""
Category index over extracted insights.

An insight tagged with several categories appears under each of them, so
the result is an index, not a partition.
"""

from typing import Iterable

from ambient.agent.schemas import Insight


def group_by_category(insights: Iterable[Insight]) -> dict[str, list[Insight]]:
    """
    Group insights by every category they are tagged with.

    Keys appear in order of first occurrence; each list keeps input order.
    """
    grouped: dict[str, list[Insight]] = {}
    for insight in insights:
        for category in insight.categories:
            grouped.setdefault(category, []).append(insight)
    return grouped
