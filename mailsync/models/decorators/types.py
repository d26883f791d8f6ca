import logging
from enum import Enum
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

EnumT = TypeVar("EnumT", bound=Enum)

logger = logging.getLogger(__name__)

# Address lists, label sets and participant sets. JSONB on PostgreSQL.
JSONList = sa.JSON().with_variant(JSONB(), "postgresql")


class EnumStringType(TypeDecorator[EnumT]):
    """Stores an Enum by member name in a VARCHAR column."""

    impl = sa.String(50)
    cache_ok = True

    def __init__(self, enum_class: type[EnumT], *args: Any, **kwargs: Any):
        self._missing_fails_on_load = kwargs.pop("missing_fails_on_load", True)
        super().__init__(*args, **kwargs)
        self._enum_class = enum_class

    def process_bind_param(self, value: EnumT | str | None, dialect: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            # Accept member names or member values from callers that pass raw strings.
            member = self._enum_class.__members__.get(value)
            if member is None:
                try:
                    member = self._enum_class(value)
                except ValueError:
                    raise ValueError(f"Invalid enum value: {value} for {self._enum_class.__name__}")
            value = member
        return value.name

    def process_result_value(self, name: str | None, dialect: Any) -> EnumT | None:
        if name is None:
            return None
        member = self._enum_class.__members__.get(name)
        if member is not None:
            return member
        if self._missing_fails_on_load:
            raise ValueError(f"Invalid enum value: {name} for {self._enum_class.__name__}")
        logger.warning(f"Invalid enum value: {name} for {self._enum_class.__name__}, returning value as is")
        return name  # type: ignore
