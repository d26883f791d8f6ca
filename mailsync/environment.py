from enum import Enum


class EnvironmentName(Enum):
    TESTING = "test"
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def is_deployed(self) -> bool:
        return self in (EnvironmentName.STAGING, EnvironmentName.PRODUCTION)
