from __future__ import annotations


class GamificationError(Exception):
    """Base class for engine errors raised to callers."""


class InvalidConfigError(GamificationError, ValueError):
    pass


class InstanceNotFoundError(GamificationError):
    def __init__(self, instance_id):
        super().__init__(f"Gamification instance {instance_id} not found")
        self.instance_id = instance_id


class MissingCapabilityError(GamificationError):
    def __init__(self, capability: str, message: str | None = None):
        super().__init__(message or f"Missing capability: {capability}")
        self.capability = capability


class RewardProviderError(GamificationError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
