"""Attachment and link enrichment for formatted messages."""

from lettacord.media.attachments import AttachmentDescriber
from lettacord.media.links import LinkDescriber

__all__ = ["AttachmentDescriber", "LinkDescriber"]
