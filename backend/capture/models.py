from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Optional, Tuple, Union

from pydantic import AliasChoices, AllowInfNan, BaseModel, ConfigDict, Field, Strict, StrictInt, StrictStr


# NaN/Infinity parse from JSON but cannot be serialized back out.
FiniteFloat = Annotated[float, Strict(), AllowInfNan(False)]

# Epoch number or ISO-8601 string. Opaque to the core: presence is checked,
# the value is never parsed.
Timestamp = Union[StrictInt, FiniteFloat, StrictStr]


class Event(BaseModel):
    """
    Client-reported event (keystroke, file open, generic telemetry).

    session_id is the one key field. `user_id` is accepted as an input alias
    (relational column name). The payload is never used as a key; `data` and
    `content` are accepted as input aliases for it.

    Instances are frozen: an event handed out by the session store can
    never change afterwards.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("session_id", "user_id"),
    )
    event_type: Optional[str] = None
    timestamp: Optional[Timestamp] = None
    payload: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("payload", "data", "content"),
    )


class FailurePolicy(str, Enum):
    """What a failing durable sink does to an ingestion request."""
    DURABILITY_FIRST = "durability_first"      # any sink failure fails the request
    AVAILABILITY_FIRST = "availability_first"  # tolerated while one sink succeeded


class SinkName(str, Enum):
    DURABLE_LOG = "durable_log"
    RELATIONAL = "relational"


@dataclass(frozen=True)
class IngestAck:
    """Success signal for one accepted event."""
    session_id: str
    persisted_to: Tuple[str, ...] = ()
