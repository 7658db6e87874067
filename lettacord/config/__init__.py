"""Configuration module for lettacord."""

from lettacord.config.loader import load_config
from lettacord.config.schema import Config, QueueConfig

__all__ = ["Config", "QueueConfig", "load_config"]
