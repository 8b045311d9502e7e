"""insightsbot - Telegram event dispatch framework."""

__version__ = "0.1.0"
__logo__ = "💡"
