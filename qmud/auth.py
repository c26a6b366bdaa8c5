"""Credential and base-URL resolution for the LLM provider.

The credential is resolved lazily from `key_source` (usually the settings)
unless a key was supplied through `login()`. The resolved Authorization
header and base URL are memoized until `invalidate()` is called, which the
scheduler does as soon as the provider answers 401.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from qmud.llm import AuthError

logger = logging.getLogger(__name__)


class AuthContext:
    def __init__(
        self,
        key_source: Callable[[], str | None],
        base_url_source: Callable[[], str],
    ) -> None:
        self._key_source = key_source
        self._base_url_source = base_url_source
        self._credential: str | None = None
        self._header: dict[str, str] | None = None
        self._base_url: str | None = None

    def __repr__(self) -> str:
        state = "set" if self._credential else "unset"
        return f"AuthContext(credential={state}, base_url={self._base_url!r})"

    @property
    def base_url(self) -> str:
        if self._base_url is None:
            self._base_url = self._base_url_source().rstrip("/")
        return self._base_url

    @property
    def has_credential(self) -> bool:
        return bool(self._credential or self._key_source())

    def login(self, key: str) -> None:
        """Install a user-supplied key, replacing any cached header."""
        self._credential = key.strip() or None
        self._header = None

    def headers(self) -> dict[str, str]:
        """Return request headers with the bearer token.

        Raises AuthError when no credential can be resolved.
        """
        if self._header is None:
            key = self._credential or self._key_source()
            if not key:
                raise AuthError("No API key configured")
            self._credential = key
            self._header = {
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            }
        return dict(self._header)

    def invalidate(self) -> None:
        """Forget the cached credential, header and base URL."""
        logger.info("Provider rejected the credential; clearing cached auth")
        self._credential = None
        self._header = None
        self._base_url = None
