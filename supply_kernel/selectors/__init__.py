"""Selectors for the supply kernel (read side)."""

from supply_kernel.selectors.episode_selector import EpisodeSelector
from supply_kernel.selectors.line_item_selector import LineItemSelector
from supply_kernel.selectors.usage_selector import ItemUsageTotals, UsageSelector

__all__ = [
    "EpisodeSelector",
    "ItemUsageTotals",
    "LineItemSelector",
    "UsageSelector",
]
