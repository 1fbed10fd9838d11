"""
Engine error types.

Raised below the router and converted into user-facing text only by
ConversationRouter.
"""


class EngineError(Exception):
    """Base class for failures inside the resolution engine."""


class AuthenticationRequired(EngineError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Authentication required for {user_id}")


class PermissionDenied(EngineError):
    def __init__(self, action: str, permission: str):
        self.action = action
        self.permission = permission
        super().__init__(f"Permission '{permission}' required for {action}")


class ParseFailure(EngineError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class QuotaExceeded(EngineError):
    def __init__(self, user_id: str, limit: int):
        self.user_id = user_id
        self.limit = limit
        super().__init__(f"Daily AI limit of {limit} exceeded for {user_id}")


class PersistenceError(EngineError):
    """A read or write against the ledger store failed."""
