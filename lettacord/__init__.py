"""lettacord - a Discord bridge for Letta agents."""

__version__ = "0.1.0"
