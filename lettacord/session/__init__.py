"""Backend session bookkeeping."""

from lettacord.session.conversations import ConversationMappings

__all__ = ["ConversationMappings"]
