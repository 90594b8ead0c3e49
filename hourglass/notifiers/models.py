from pydantic import BaseModel, Field

DEFAULT_EVENTS = ("completed", "failed", "paused")


class NotifierConfig(BaseModel):
    name: str
    type: str
    config: dict = Field(default_factory=dict)
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_EVENTS))
