"""Tiered split-buy / split-sell engine for leveraged ETFs (daily bars).

Core idea:
- Capital is split into N tiers; tier k+1 is bought when price falls dip% below
  tier k's entry (tier 1: below the previous close).
- Each tier sells on its own when price reaches entry * (1 + peak%), or is
  force-sold after stop_loss_days while under water.
- A cycle runs from the first buy while flat to the next full liquidation; the
  next cycle is sized from the cash the previous one ended with.
- Pro1/Pro2/Pro3 presets are picked per cycle from indicator similarity with
  past periods, with golden-cross exclusion and risk downgrades.
- Live mode produces a daily LOC/MOC order sheet and reconciles it at the close.
"""

__all__ = [
    "config",
    "errors",
    "money",
    "models",
    "indicators",
    "divergence",
    "position",
    "cycle",
    "metrics",
    "backtester",
    "recommender",
    "cache",
    "orchestrator",
    "orders",
    "precompute",
    "db",
]
