"""
User Model
==========

Account that owns subscriptions and authenticates with an API key.
The raw key is never stored: ``api_key_hash`` is HMAC-SHA256(raw_key,
pepper) and ``api_key_prefix`` holds the first characters for display.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from meterproxy.models.billing import utcnow


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True, max_length=32)
    email: str = Field(unique=True, index=True, max_length=255)
    is_admin: bool = Field(default=False)
    stripe_customer_id: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    api_key_hash: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=128)
    api_key_prefix: Optional[str] = Field(default=None, nullable=True, max_length=16)
    created_at: datetime = Field(default_factory=utcnow)
