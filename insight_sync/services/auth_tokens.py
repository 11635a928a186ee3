from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from insight_sync.config import get_settings

TokenRequestFunc = Callable[[str, dict[str, str], int], Any]

_EXPIRY_MARGIN = timedelta(seconds=60)


class TokenExchangeError(RuntimeError):
    """Raised when bearer credentials cannot be obtained."""


@dataclass(frozen=True)
class TokenExchangeConfig:
    token_url: str
    client_id: str
    client_secret: str
    timeout_seconds: int = 30


class TokenProvider:
    """Obtain and cache OAuth2 client-credentials bearer tokens."""

    def __init__(
        self,
        *,
        config: TokenExchangeConfig | None = None,
        request_func: TokenRequestFunc | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if config is None:
            settings = get_settings()
            config = TokenExchangeConfig(
                token_url=(settings.token_url or "").strip(),
                client_id=(settings.client_id or "").strip(),
                client_secret=(settings.client_secret or "").strip(),
                timeout_seconds=settings.metadata_api_timeout_seconds,
            )
        if not config.token_url:
            raise ValueError("A token URL is required to initialize TokenProvider.")
        if not config.client_id or not config.client_secret:
            raise ValueError("Client credentials are required to initialize TokenProvider.")

        self._config = config
        self._request_func = request_func
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at: datetime | None = None

    def get_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and self._expires_at and now < self._expires_at - _EXPIRY_MARGIN:
                return self._token
            payload = self._exchange()
            token = payload.get("access_token")
            if not isinstance(token, str) or not token:
                raise TokenExchangeError("Token response did not include an access_token.")
            expires_in = payload.get("expires_in")
            lifetime = int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else 3600
            self._token = token
            self._expires_at = now + timedelta(seconds=lifetime)
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = None

    def _exchange(self) -> Mapping[str, Any]:
        form = {
            "grant_type": "client_credentials",
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        try:
            if self._request_func is not None:
                response = self._request_func(self._config.token_url, form, self._config.timeout_seconds)
            else:
                import requests

                response = requests.post(
                    self._config.token_url,
                    data=form,
                    timeout=self._config.timeout_seconds,
                )
        except Exception as exc:  # pragma: no cover - defensive networking
            raise TokenExchangeError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise TokenExchangeError(f"Token endpoint responded with {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenExchangeError("Token endpoint returned a non-JSON response.") from exc
        if not isinstance(payload, Mapping):
            raise TokenExchangeError("Token endpoint returned an unexpected payload.")
        return payload


class StaticTokenProvider:
    """Token provider returning a fixed bearer value."""

    def __init__(self, token: str) -> None:
        self._token = token

    def get_token(self) -> str:
        return self._token

    def invalidate(self) -> None:
        return None


__all__ = ["StaticTokenProvider", "TokenExchangeConfig", "TokenExchangeError", "TokenProvider"]
