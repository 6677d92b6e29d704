"""Exception hierarchy shared by the REST and WebSocket layers.

Every error carries an HTTP-style status code so REST handlers can turn it
into a JSON response directly. The WebSocket layer never raises these to the
client; it logs them and (optionally) reports them as ``error`` events.
"""


class MessengerError(Exception):
    """Base exception for messenger errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(MessengerError):
    """Raised when a token is missing, malformed, expired or badly signed."""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class AuthorizationError(MessengerError):
    """Raised when an authenticated user may not perform an operation."""
    def __init__(self, message: str = "Not a participant of this conversation"):
        super().__init__(message, status_code=403)


class NotFoundError(MessengerError):
    """Raised when a conversation or message does not exist."""
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class PersistenceError(MessengerError):
    """Raised when the store rejects a read or write."""
    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        prefix = f"Store error during {operation}: " if operation else "Store error: "
        super().__init__(prefix + message, status_code=500)
