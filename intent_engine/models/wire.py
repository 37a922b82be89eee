"""Wire base model — camelCase on the wire, snake_case in Python."""

from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Every stored or compared timestamp is timezone-aware UTC
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class WireModel(BaseModel):
    """
    Base for every model that crosses the HTTP boundary.

    Accepts either the camelCase alias or the Python field name on input.
    Serialize with ``by_alias=True`` for API responses.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
