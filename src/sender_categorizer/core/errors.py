"""Custom exception types for the sender categorizer.

Error messages follow one convention throughout the package:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

Two of these (AccessError, ConfigurationError) are fatal for a categorization
run and are converted into a typed CategorizeError result by the orchestrator
rather than escaping the invocation boundary.
"""


class CategorizerError(Exception):
    """Base exception for all sender categorizer errors."""

    pass


class ConfigValidationError(CategorizerError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(CategorizerError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(CategorizerError):
    """Raised when MSAL device code flow fails or tokens cannot be acquired."""

    pass


class AccessError(CategorizerError):
    """Raised when a user cannot run categorization.

    Covers an unknown user, a missing or expired mailbox credential, and a
    user without AI access. No provider or database work is attempted after
    this is raised.

    Attributes:
        user_id: The user the check failed for
    """

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id


class ConfigurationError(CategorizerError):
    """Raised when a user has no categories defined."""

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id


class GraphAPIError(CategorizerError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(CategorizerError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely.
    """

    pass


class ClassificationError(CategorizerError):
    """Raised when a Claude sender classification call fails.

    Attributes:
        sender: The sender being classified (None for batch calls)
        attempts: Number of attempts made
    """

    def __init__(self, message: str, sender: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.sender = sender
        self.attempts = attempts


class DatabaseError(CategorizerError):
    """Raised when SQLite operations fail."""

    pass


class CategoryConflictError(DatabaseError):
    """Raised when a category name collides and the existing row cannot be re-read.

    Normal duplicate-name races are recovered inside get_or_create_category;
    this only surfaces if the conflicting row vanished between insert and read.

    Attributes:
        user_id: Owner of the category
        name: Category name that collided
    """

    def __init__(self, message: str, user_id: str, name: str):
        super().__init__(message)
        self.user_id = user_id
        self.name = name
