"""HTTP surface: aiohttp handlers, sender authentication and JSON views."""

from claimsend.api.auth import HeaderSenderAuthenticator
from claimsend.api.http import SendApi, error_middleware

__all__ = ["HeaderSenderAuthenticator", "SendApi", "error_middleware"]
