"""Chat platform channels."""

from lettacord.channels.discord import DiscordChannel

__all__ = ["DiscordChannel"]
