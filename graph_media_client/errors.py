import copy
from types import MappingProxyType
from typing import Any, Optional

REAUTH_MESSAGE = (
    "Posting failed because the account could not be authenticated. "
    "Please re-authenticate the account."
)

# Expired token and the auth related subcodes documented for the Graph API.
EXPIRED_TOKEN_CODE = 190
REAUTH_SUBCODES = frozenset({458, 459, 460, 463, 464, 467, 492})

RATE_LIMIT_ERROR = MappingProxyType(
    {
        "error": MappingProxyType(
            {
                "message": "(#32) Page request limit reached",
                "type": "OAuthException",
                "code": 32,
                "fbtrace_id": "emulated",
            }
        )
    }
)


def rate_limit_document() -> dict:
    """Return a mutable copy of the emulated rate limit error"""
    return {"error": copy.deepcopy(dict(RATE_LIMIT_ERROR["error"]))}


class GraphClientError(Exception):
    """Base class for every failure raised by the client"""

    def __init__(self, message: str, document: Any = None):
        super().__init__(message)
        self.document = document


class TransportFailure(GraphClientError):
    """The request never produced a response body"""


class DecodeFailure(GraphClientError):
    """The response body was not valid JSON"""


class ApiError(GraphClientError):
    """The platform answered with an ``error`` object. Never retried."""

    def __init__(self, document: Any):
        super().__init__(f"graph api error: {document}", document)

    @property
    def error(self) -> dict:
        if isinstance(self.document, dict) and isinstance(
            self.document.get("error"), dict
        ):
            return self.document["error"]
        return {}

    @property
    def code(self) -> Optional[int]:
        return self.error.get("code")

    @property
    def error_subcode(self) -> Optional[int]:
        return self.error.get("error_subcode")

    @property
    def message(self) -> str:
        return self.error.get("message", "")


class UnexpectedShape(GraphClientError):
    """The document parsed but a required field was missing or mistyped"""

    def __init__(self, document: Any, message: str = "unexpected json"):
        super().__init__(f"{message}: {document}", document)


class PollTimeout(GraphClientError):
    """The iteration budget ran out while the status was still transient"""

    def __init__(self, phase: str, document: Any = None):
        super().__init__(f"polling {phase} timed out", document)
        self.phase = phase


class PollTerminalFailure(GraphClientError):
    """The platform reported a failed status, or one we do not recognise"""

    def __init__(self, phase: str, document: Any = None, message: str = ""):
        super().__init__(message or f"{phase} failed: {document}", document)
        self.phase = phase


class CopyrightViolation(PollTerminalFailure):
    def __init__(self, document: Any = None):
        super().__init__(
            "copyright_check_status", document, "copyright violation detected"
        )


class OperationCancelled(GraphClientError):
    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


def user_message(error: BaseException) -> str:
    """Text that is safe to show an end user for ``error``.

    Only credential problems are surfaced; every other failure maps to an
    empty string and stays diagnostic detail.
    """
    if not isinstance(error, ApiError):
        return ""
    if error.code == EXPIRED_TOKEN_CODE:
        return REAUTH_MESSAGE
    if error.error_subcode in REAUTH_SUBCODES:
        return REAUTH_MESSAGE
    return ""
