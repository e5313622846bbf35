"""Pydantic v2 schemas for processor webhooks."""

from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    handled: bool
    duplicate: bool = False
