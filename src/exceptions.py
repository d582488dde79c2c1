"""
Kimland Stock Sync - Custom Exceptions
Specific exception classes for the scrape → reconcile → update pipeline.
"""


class KimSyncError(Exception):
    """Base exception for all Kimland Stock Sync errors."""

    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}

    def __str__(self):
        base = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} [{context_str}]"
        return base


class AuthFailure(KimSyncError):
    """Remote session is not authenticated (handshake failed or never ran)."""

    def __init__(self, message: str, login_response: str = None):
        context = {"login_response": login_response} if login_response else {}
        super().__init__(message, context)
        self.login_response = login_response


class NotFoundError(KimSyncError):
    """Validated search found nothing plausible for an identifier."""

    def __init__(self, message: str, identifier: str = None):
        context = {"sku": identifier} if identifier else {}
        super().__init__(message, context)
        self.identifier = identifier


class ParseFailure(KimSyncError):
    """Remote page matched no known selector or pattern."""

    def __init__(self, message: str, url: str = None, reason: str = None):
        context = {}
        if url:
            context["url"] = url
        if reason:
            context["reason"] = reason
        super().__init__(message, context)
        self.url = url
        self.reason = reason


class PlatformError(KimSyncError):
    """Errors from the catalog platform (Shopify Admin REST API)."""

    PERMISSION_MARKERS = ("read_locations", "location scope", "access denied", "merchant approval")

    def __init__(self, message: str, status_code: int = None, variant_id: str = None):
        context = {}
        if status_code:
            context["status"] = status_code
        if variant_id:
            context["variant_id"] = variant_id
        super().__init__(message, context)
        self.status_code = status_code
        self.variant_id = variant_id

    @property
    def is_client_error(self) -> bool:
        """4xx errors - client should not retry."""
        return bool(self.status_code and 400 <= self.status_code < 500)

    @property
    def is_server_error(self) -> bool:
        """5xx errors - server issue, may retry."""
        return bool(self.status_code and self.status_code >= 500)

    @property
    def is_retryable(self) -> bool:
        """Check if error is worth retrying."""
        return self.is_server_error or self.status_code in (408, 429)  # Timeout, Rate limit

    @property
    def is_permission_error(self) -> bool:
        """403, or a message complaining about the location-read scope."""
        if self.status_code == 403:
            return True
        message = super(KimSyncError, self).__str__().lower()
        return any(marker in message for marker in self.PERMISSION_MARKERS)


class UpdatePermissionDenied(PlatformError):
    """Modern inventory path refused for the current token's scopes."""


class ConfigurationError(KimSyncError):
    """Errors in configuration (missing .env values, etc)."""

    def __init__(self, message: str, setting: str = None):
        context = {"setting": setting} if setting else {}
        super().__init__(message, context)
        self.setting = setting
