import httpx
import pytest

from cliphub.clients.identity_client import IdentityClient
from cliphub.errors import Unavailable


@pytest.fixture
def introspection_settings(settings):
    settings.auth_mode = "introspection"
    settings.identity_client_secret = "s3cret"
    return settings


def transport_for(tokens: dict, calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        form = dict(httpx.QueryParams(request.content.decode()))
        subject = tokens.get(form.get("token"))
        if subject is None:
            return httpx.Response(200, json={"active": False})
        return httpx.Response(200, json={"active": True, "sub": subject})

    return httpx.MockTransport(handler)


async def test_active_token_resolves_to_subject_and_is_cached(introspection_settings):
    calls = []
    client = IdentityClient(introspection_settings, transport=transport_for({"tok-a": "alice"}, calls))
    try:
        assert await client.introspect("tok-a") == "alice"
        assert await client.introspect("tok-a") == "alice"
    finally:
        await client.stop()

    assert len(calls) == 1
    request = calls[0]
    assert str(request.url) == introspection_settings.identity_introspection_url
    assert request.headers["authorization"].startswith("Basic ")


async def test_inactive_token_is_none_and_not_cached(introspection_settings):
    calls = []
    client = IdentityClient(introspection_settings, transport=transport_for({}, calls))
    try:
        assert await client.introspect("expired") is None
        assert await client.introspect("expired") is None
    finally:
        await client.stop()
    assert len(calls) == 2


async def test_provider_errors_are_unavailable(introspection_settings):
    def boom(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    client = IdentityClient(introspection_settings, transport=httpx.MockTransport(boom))
    try:
        with pytest.raises(Unavailable):
            await client.introspect("tok")
    finally:
        await client.stop()
