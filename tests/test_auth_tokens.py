from __future__ import annotations

from typing import Any

import pytest

from insight_sync.services.auth_tokens import TokenExchangeConfig, TokenExchangeError, TokenProvider


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: Any = None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


CONFIG = TokenExchangeConfig(token_url="https://auth.example.com/token", client_id="id", client_secret="secret")


def test_token_is_cached_until_close_to_expiry(clock):
    calls: list[dict[str, str]] = []

    def _request(url, form, timeout):
        calls.append(form)
        return DummyResponse(payload={"access_token": f"token-{len(calls)}", "expires_in": 600})

    provider = TokenProvider(config=CONFIG, request_func=_request, clock=clock)

    assert provider.get_token() == "token-1"
    clock.advance(minutes=8)
    assert provider.get_token() == "token-1"
    clock.advance(minutes=1, seconds=1)
    assert provider.get_token() == "token-2"
    assert calls[0]["grant_type"] == "client_credentials"


def test_invalidate_forces_a_new_exchange(clock):
    tokens = iter(["a", "b"])
    provider = TokenProvider(
        config=CONFIG,
        request_func=lambda url, form, timeout: DummyResponse(payload={"access_token": next(tokens)}),
        clock=clock,
    )

    assert provider.get_token() == "a"
    provider.invalidate()
    assert provider.get_token() == "b"


@pytest.mark.parametrize(
    "response",
    [DummyResponse(500, {"error": "down"}), DummyResponse(200, None), DummyResponse(200, {"token_type": "bearer"})],
)
def test_exchange_failures_raise(response, clock):
    provider = TokenProvider(config=CONFIG, request_func=lambda url, form, timeout: response, clock=clock)
    with pytest.raises(TokenExchangeError):
        provider.get_token()


def test_configuration_is_validated():
    with pytest.raises(ValueError):
        TokenProvider(config=TokenExchangeConfig(token_url="", client_id="id", client_secret="secret"))
    with pytest.raises(ValueError):
        TokenProvider(config=TokenExchangeConfig(token_url="https://auth", client_id="", client_secret=""))


def test_short_lived_tokens_are_refreshed_every_call(clock):
    tokens = iter(["first", "second"])
    provider = TokenProvider(
        config=CONFIG,
        request_func=lambda url, form, timeout: DummyResponse(payload={"access_token": next(tokens), "expires_in": 30}),
        clock=clock,
    )

    assert provider.get_token() == "first"
    assert provider.get_token() == "second"
