"""Security errors.

This module defines the exception hierarchy raised inside the security core.
All errors inherit from SecurityError so glue code can catch one type.

Security Note:
    ``description`` is the only text that may reach a client and it is kept
    generic on purpose. The precise reason (bad signature, wrong issuer, ...)
    is carried by the exception type and message and is logged server-side.
"""

from __future__ import annotations


class SecurityError(Exception):
    """Base exception for all security-core failures.

    Attributes:
        error_code: HTTP status the Flask glue maps this error to.
        description: Client-safe message.
    """

    error_code: int = 401
    description: str = "Authentication failed"


class MissingToken(SecurityError):  # noqa: N818
    """Raised when no credential is found in the request.

    This occurs when:
    - The Authorization header is missing or not ``Bearer <token>``
    - The access-token cookie is absent
    """

    description = "Authentication required"


class InvalidToken(SecurityError):  # noqa: N818
    """Raised when a token is present but cannot be trusted.

    Subclasses narrow the reason for logs and tests. Clients always see the
    same generic 401 whichever subclass was raised, which keeps token probing
    from telling an attacker what was wrong.
    """

    description = "Invalid or expired token"


class MalformedToken(InvalidToken):
    """Token is not a three-segment signed token or its payload is unreadable."""


class InvalidSignature(InvalidToken):
    """Signature does not match the header and payload under the given secret."""


class InvalidIssuer(InvalidToken):
    """``iss`` claim does not match the expected issuer."""


class InvalidAudience(InvalidToken):
    """``aud`` claim does not match the expected audience."""


class WrongTokenType(InvalidToken):
    """An access token was presented where a refresh token was expected, or vice versa."""


class ExpiredToken(SecurityError):  # noqa: N818
    """Raised when a token's ``exp`` claim has passed.

    Note:
        Treat identically to InvalidToken from the client's point of view.
        The distinction exists for logs and metrics.
    """

    description = "Invalid or expired token"


class Forbidden(SecurityError):  # noqa: N818
    """Raised when a valid token lacks the role a route requires.

    This is the only token-related error that maps to 403.
    """

    error_code = 403
    description = "Forbidden"


class StoreError(SecurityError):
    """Raised when a backing store (key-value or relational) is unavailable.

    Callers decide the policy: the admission gate logs and continues
    (fail-open), authentication decisions treat it as "not authenticated"
    (fail-closed).
    """

    error_code = 503
    description = "Service temporarily unavailable"


class ChallengeUnavailable(SecurityError):  # noqa: N818
    """The external challenge service could not be reached or answered garbage.

    Never leaves ``gatekeeper.challenge``; it is converted to a failed result.
    """

    error_code = 400
    description = "Failed to verify reCAPTCHA"
