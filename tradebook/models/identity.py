"""
Record Identity

Every record id is in exactly one of two states:

- Pending(token): generated on this device, not yet acknowledged remotely.
- Confirmed(server_id): assigned by the remote authoritative store.

DESIGN DECISION: Records keep their id as a plain string so they
serialize unchanged into the local store and outbox payloads. The
state is encoded by a reserved prefix and recovered with parse_record_id().
A token can therefore never be mistaken for a server id.
"""

from typing import Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


PENDING_PREFIX = "tmp_"


class Pending(BaseModel):
    """A locally generated id awaiting remote confirmation."""
    model_config = ConfigDict(frozen=True)

    token: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{PENDING_PREFIX}{self.token}"


class Confirmed(BaseModel):
    """A server-assigned id."""
    model_config = ConfigDict(frozen=True)

    server_id: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return self.server_id


RecordId = Union[Pending, Confirmed]


def new_pending_id() -> str:
    """Generate a fresh pending id in its string form."""
    return str(Pending(token=uuid4().hex))


def is_pending(value: object) -> bool:
    return isinstance(value, str) and value.startswith(PENDING_PREFIX)


def parse_record_id(value: str) -> RecordId:
    """
    Decode the string form of an id.

    Raises:
        ValueError: If the value is empty or a bare prefix
    """
    if not value:
        raise ValueError("Record id cannot be empty")
    if value.startswith(PENDING_PREFIX):
        token = value[len(PENDING_PREFIX):]
        if not token:
            raise ValueError(f"Pending id has no token: {value!r}")
        return Pending(token=token)
    return Confirmed(server_id=value)
