class ProgressionError(Exception):
    """Base class for every error raised by the progression engine."""


class NotFound(ProgressionError, LookupError):
    """A referenced character, mission, badge, activity or item does not exist."""

    def __init__(self, kind: str, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidAmount(ProgressionError, ValueError):
    pass


class InvalidScore(ProgressionError, ValueError):
    pass


class InsufficientFunds(ProgressionError, ValueError):
    def __init__(self, student_id: str, class_id: str, required: int):
        self.student_id = student_id
        self.class_id = class_id
        self.required = required
        super().__init__(f"Insufficient balance: {required} needed")


class ItemUnavailable(ProgressionError, ValueError):
    pass


class ConcurrencyConflict(ProgressionError):
    """A write kept losing a race; the caller may retry the whole event."""


class ConfigurationError(ProgressionError):
    pass
