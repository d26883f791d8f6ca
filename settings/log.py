import logging

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

_LEVELS = {
    "fatal": logging.FATAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "notset": logging.NOTSET,
}


class LoggingSettings(BaseSettings):
    use_config: bool = Field(alias="LOGGING_USE_CONFIG", default=True)
    use_pretty_json: bool = Field(alias="LOGGING_USE_PRETTY_JSON", default=True)
    level: int = Field(alias="LOGGING_LEVEL", default=logging.INFO)

    @field_validator("level", mode="before")
    def set_logging_level(cls, level: str | int, info: ValidationInfo) -> int:
        if isinstance(level, int):
            return level
        return cls._get_logging_level(level)

    @classmethod
    def _get_logging_level(cls, level: str | None) -> int:
        if level and level.lower() in _LEVELS:
            return _LEVELS[level.lower()]

        print("Invalid logging level, using INFO by default.")
        return logging.INFO
