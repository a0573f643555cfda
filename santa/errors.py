"""
Secret Santa Errors - Exception Hierarchy

Each error also derives from the builtin that best describes it, so callers
that only know about ValueError/LookupError/OSError still catch them.

HTTP MAPPING (see web.py):
- InsufficientParticipants → 400
- InvalidToken → 404 (uniform body, never says why)
- PersistenceFailure → 500
- DeliveryFailure → never reaches a client (queued for retry)
"""


class SecretSantaError(Exception):
    """Base class for every error raised by the santa package"""


class InsufficientParticipants(SecretSantaError, ValueError):
    """Fewer than 2 eligible participants"""

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Need at least 2 participants (got {count})")


class InvalidToken(SecretSantaError, LookupError):
    """Token unknown, malformed or not usable - callers must not distinguish"""

    def __init__(self):
        super().__init__("Invalid link")


class DeliveryFailure(SecretSantaError, RuntimeError):
    """A dispatcher could not hand a message to its transport"""


class PersistenceFailure(SecretSantaError, OSError):
    """State could not be written to disk"""
