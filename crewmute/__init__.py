"""Voice moderation bot for social deduction game nights."""

__version__ = "0.3.0"
