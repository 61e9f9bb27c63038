from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionCreate(BaseModel):
    event: str = Field(..., description="motion, temperature or high_temperature")
    url: str = Field(..., description="absolute http(s) URL receiving the events")


class SubscriptionUpdate(BaseModel):
    url: Optional[str] = None
    event: Optional[str] = None


class Subscription(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    url: str
    owner: str
    createdAt: str
    updatedAt: Optional[str] = None


class UpdatedSubscription(BaseModel):
    id: str
    url: str
    owner: Optional[str] = None
    event: str


class Created(BaseModel):
    ok: bool = True
    id: str


class Updated(BaseModel):
    ok: bool = True
    updated: UpdatedSubscription


class Ack(BaseModel):
    ok: bool = True


class SubscriptionList(BaseModel):
    ok: bool = True
    motion: List[Subscription] = Field(default_factory=list)
    temperature: List[Subscription] = Field(default_factory=list)
