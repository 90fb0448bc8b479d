"""
Custom exceptions for better error handling.

Every exception carries the HTTP status it is rendered with, so handlers
can simply raise and let the application's exception handler answer.
"""


class CallosError(Exception):
    """Base exception for function errors."""
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        super().__init__(message)


class InvalidRequestError(CallosError):
    """Missing or invalid request fields."""
    status_code = 400


class AuthenticationError(CallosError):
    """Missing or invalid bearer token."""
    status_code = 401


class PermissionDeniedError(CallosError):
    """Authenticated caller lacks the required role."""
    status_code = 403


class InvalidCallbackTokenError(PermissionDeniedError):
    """Presented callback token does not match the stored one."""
    pass


class NotFoundError(CallosError):
    """Requested row does not exist."""
    status_code = 404


class ConfigurationError(CallosError):
    """Configuration, environment variable or stored credential set is incomplete."""
    status_code = 400


class CredentialError(CallosError):
    """Failed to encrypt or decrypt a stored secret."""
    status_code = 500


class APIError(CallosError):
    """Base class for upstream provider errors."""
    status_code = 502

    def __init__(self, message: str, upstream_status: int = None, platform: str = None, code=None):
        self.upstream_status = upstream_status
        self.platform = platform
        self.code = code
        super().__init__(message)


class PipedriveAPIError(APIError):
    """Pipedrive API errors."""
    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message, upstream_status=upstream_status, platform="pipedrive")


class LivespaceAPIError(APIError):
    """Livespace API errors, including logical failures on HTTP 200."""
    def __init__(self, message: str, upstream_status: int = None, code=None):
        super().__init__(message, upstream_status=upstream_status, platform="livespace", code=code)


class GoogleAPIError(APIError):
    """Google OAuth / Workspace API errors."""
    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message, upstream_status=upstream_status, platform="google")


class FirefliesAPIError(APIError):
    """Fireflies API errors."""
    status_code = 400

    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message, upstream_status=upstream_status, platform="fireflies")


class TelnyxAPIError(APIError):
    """Telnyx API errors."""
    status_code = 400

    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message, upstream_status=upstream_status, platform="telnyx")


class ForwardError(APIError):
    """Downstream automation endpoint could not be reached."""
    def __init__(self, message: str, upstream_status: int = None):
        super().__init__(message, upstream_status=upstream_status, platform="automation")
