"""
User record data models and validation.

- Identity: integer id, unique in the durable store
- PII: email, encrypted at rest and in cache
- Timestamps: optional instants, never sentinel values at this layer
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Wire names of the eight logical fields every ingested record must carry.
# "email_address" is accepted in place of "email".
RECORD_FIELDS = (
    "id",
    "first_name",
    "last_name",
    "email",
    "created_at",
    "deleted_at",
    "merged_at",
    "parent_user_id",
)
EMAIL_ALIASES = ("email", "email_address")


def _parse_optional_instant(v: Any) -> Any:
    """
    Normalize the timestamp encodings seen on the wire.

    Accepts None, ISO-8601 strings, epoch milliseconds (-1 meaning absent)
    and the {"Time": ..., "Valid": bool} object emitted by nullable SQL
    time columns.
    """
    if v is None:
        return None
    if isinstance(v, dict):
        if not v.get("Valid", v.get("valid", False)):
            return None
        return v.get("Time", v.get("time"))
    if isinstance(v, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(v, (int, float)):
        if v < 0:
            return None
        try:
            return datetime.fromtimestamp(v / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"timestamp out of range: {v}") from e
    return v


class UserRecord(BaseModel):
    """
    A single personal record.

    The email field holds plaintext only between the read services and the
    caller; everywhere else it carries ciphertext.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(description="Unique user id")
    first_name: str = Field(default="", max_length=255, description="First name")
    last_name: str = Field(default="", max_length=255, description="Last name")
    email: str = Field(
        default="",
        validation_alias=AliasChoices(*EMAIL_ALIASES),
        description="Email address (PII)",
    )
    created_at: Optional[datetime] = Field(default=None, description="Creation instant")
    deleted_at: Optional[datetime] = Field(default=None, description="Deletion instant")
    merged_at: Optional[datetime] = Field(default=None, description="Merge instant")
    parent_user_id: Optional[int] = Field(default=None, description="Parent user id, absent or 0 for none")

    @field_validator("id", "parent_user_id", mode="before")
    def parse_integer(cls, v: Any) -> Any:
        """Ids arrive as JSON numbers or numeric strings."""
        if isinstance(v, bool):
            raise ValueError("id must be an integer")
        if isinstance(v, str):
            return int(v.strip())
        return v

    @field_validator("created_at", "deleted_at", "merged_at", mode="before")
    def parse_instant(cls, v: Any) -> Any:
        return _parse_optional_instant(v)

    @property
    def cache_key(self) -> str:
        return str(self.id)

    def with_email(self, email: str) -> "UserRecord":
        """Return a copy carrying a different email value."""
        return self.model_copy(update={"email": email})


class UserResponse(BaseModel):
    """Response envelope shared by every /users endpoint."""

    status_code: int = Field(description="HTTP status code")
    message: str = Field(description="Human readable outcome")
    data: Optional[Any] = Field(default=None, description="Payload")


class Page(BaseModel):
    """One page of a paginated listing."""

    page_index: int = Field(description="0-based page index")
    page_size: int = Field(description="Requested records per page")
    records: List[UserRecord] = Field(default_factory=list)
    is_terminal: bool = Field(description="True when no further page exists")
