from .errors import (  # noqa: F401
    GamificationError,
    InstanceNotFoundError,
    InvalidConfigError,
    MissingCapabilityError,
    RewardProviderError,
)
