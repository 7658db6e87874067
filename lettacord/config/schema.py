"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

# Discord intents: GUILDS | GUILD_MEMBERS | GUILD_MESSAGES | GUILD_MESSAGE_TYPING
# | DIRECT_MESSAGES | DIRECT_MESSAGE_TYPING | MESSAGE_CONTENT
DEFAULT_INTENTS = 1 | 2 | 512 | 2048 | 4096 | 16384 | 32768


class QueueConfig(BaseModel):
    """Timing knobs for the per-channel queues (seconds)."""
    initial_debounce: float = Field(default=30.0, ge=0)
    batch_window: float = Field(default=1.0, ge=0)
    typing_pause: float = Field(default=2.0, ge=0)
    backend_timeout: float = Field(default=300.0, gt=0)
    emergency_multiplier: float = Field(default=2.0, ge=1)

    @property
    def emergency_ceiling(self) -> float:
        """Longest a batch may stay open before it is processed regardless."""
        return self.emergency_multiplier * max(self.batch_window, self.typing_pause)


class LettaConfig(BaseModel):
    """Letta backend connection."""
    token: str | None = None
    base_url: str = "https://api.letta.com"
    agent_id: str | None = None
    use_conversations: bool = False  # one Letta conversation per Discord channel


class DiscordConfig(BaseModel):
    """Discord bot configuration."""
    token: str = ""
    gateway_url: str = "wss://gateway.discord.gg/?v=10&encoding=json"
    intents: int = DEFAULT_INTENTS
    channel_id: str | None = None  # default channel for heartbeat / join replies
    ignore_channel_id: str | None = None
    typing_timeout: float = Field(default=10.0, gt=0)  # Discord typing indicator lifetime


class HeartbeatConfig(BaseModel):
    """Random autonomous heartbeat."""
    enabled: bool = False
    interval_minutes: int = Field(default=30, ge=1)
    firing_probability: float = Field(default=0.1, ge=0, le=1)


class MediaConfig(BaseModel):
    """Attachment and link enrichment."""
    elevenlabs_api_key: str | None = None
    fetch_timeout: float = Field(default=10.0, gt=0)


class Config(BaseModel):
    """Root configuration."""
    queue: QueueConfig = Field(default_factory=QueueConfig)
    letta: LettaConfig = Field(default_factory=LettaConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    production: bool = False

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()
