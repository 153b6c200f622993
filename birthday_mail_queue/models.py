# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models shared by the queue processor, the store and the API.

Models:
    - MessageStatus: lifecycle status of a queued email.
    - ContactSnapshot: denormalized copy of the recipient contact.
    - QueuedMessage: one row of the ``email_queue`` table.
    - QueueConfig: rate limits, pacing and retry policy of the processor.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_MAX_RETRIES = 3


class ConfigurationError(ValueError):
    """Raised when a configuration update or settings value cannot be applied."""


class MessageStatus(str, Enum):
    """Status of a queued message.

    Attributes:
        PENDING: waiting for a (first or repeated) delivery attempt.
        SENT: delivered, terminal.
        FAILED: retries exhausted, terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATUSES = (MessageStatus.SENT, MessageStatus.FAILED)


class ContactSnapshot(BaseModel):
    """Recipient data copied into the queue row at enqueue time."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str = ""
    email: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @classmethod
    def from_any(cls, contact: Any) -> "ContactSnapshot":
        """Build a snapshot from a mapping, another snapshot or an object with attributes."""
        if isinstance(contact, ContactSnapshot):
            return contact
        if isinstance(contact, Mapping):
            data = dict(contact)
        else:
            data = {key: getattr(contact, key, None) for key in ("id", "name", "email")}
        if data.get("name") is None:
            data["name"] = ""
        return cls.model_validate(data)


class QueuedMessage(BaseModel):
    """One outbound email awaiting or having completed delivery.

    Timestamps are seconds since the epoch (UTC).
    """

    model_config = ConfigDict(use_enum_values=False)

    id: int
    contact_id: str | None = None
    contact_name: str = ""
    contact_email: str | None = None
    subject: str = ""
    body: str = ""
    status: MessageStatus = MessageStatus.PENDING
    priority: int = 0
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    scheduled_at: float | None = None
    sent_at: float | None = None
    deferred_until: float | None = None
    error: str | None = None
    created_at: float | None = None

    @property
    def contact(self) -> ContactSnapshot:
        return ContactSnapshot(id=self.contact_id, name=self.contact_name, email=self.contact_email)

    @property
    def is_eligible(self) -> bool:
        """Mirror of the store's eligibility predicate (ignores deferral)."""
        return self.status == MessageStatus.PENDING and self.retry_count < self.max_retries


class QueueConfig(BaseModel):
    """Runtime configuration of :class:`~birthday_mail_queue.core.EmailQueueProcessor`.

    Limits are policy values and are deliberately not range-checked.
    """

    model_config = ConfigDict(extra="forbid")

    max_per_minute: int = 10
    max_per_hour: int = 100
    processing_interval: float = 6.0
    cleanup_interval: float = 60.0
    batch_size: int = 5
    message_delay: float = 1.0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delays: tuple[int, ...] = Field(default_factory=tuple)
    count_failed_attempts: bool = False

    def merged(self, partial: Mapping[str, Any] | None) -> "QueueConfig":
        """Return a copy with the keys of ``partial`` replaced."""
        if not partial:
            return self.model_copy()
        unknown = sorted(set(partial) - set(type(self).model_fields))
        if unknown:
            raise ConfigurationError(f"Unknown queue configuration keys: {', '.join(unknown)}")
        data = self.model_dump()
        data.update(partial)
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
