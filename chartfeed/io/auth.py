"""Bearer token collaborators used to authenticate REST calls."""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class TokenProvider(Protocol):
    """Anything able to hand out a currently valid bearer token.

    Acquisition and refresh are the provider's business; the client only
    asks for a token before each request.
    """

    async def get_token(self) -> str:
        ...


class StaticTokenProvider:
    """Serve a fixed token, e.g. one injected through ``API_TOKEN``."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("StaticTokenProvider requires a non-empty token")
        self._token = token

    async def get_token(self) -> str:
        return self._token
