from __future__ import annotations

import asyncio

import pytest

from history.models.identity import FederatedUser
from history.services.oauth import OAuthError
from history.services.session_bridge import establish_local_session

ADA = FederatedUser(
    sub="valyu|123",
    email="Ada@Example.com",
    name="Ada Lovelace",
    picture="https://example.com/ada.png",
    organisation_id="org_1",
    organisation_name="Analytical Engines",
)


@pytest.fixture
def userinfo(monkeypatch):
    holder = {"user": ADA}

    async def fake_fetch(access_token, **kwargs):
        assert access_token == "valyu-access"
        return holder["user"]

    monkeypatch.setattr("history.services.session_bridge.fetch_user_info", fake_fetch)
    return holder


@pytest.mark.asyncio
async def test_first_sign_in_provisions_account(store, userinfo):
    session = await establish_local_session("valyu-access", store)

    assert session.created is True
    assert session.email == "Ada@Example.com"
    assert store.sessions[session.token_hash] == session.user_id
    assert store.users[session.user_id]["user_metadata"]["valyu_sub"] == "valyu|123"
    body = session.to_response()
    assert body["tokenHash"] == body["token_hash"] == session.token_hash
    assert body["user"]["valyu_organisation_name"] == "Analytical Engines"


@pytest.mark.asyncio
async def test_repeated_sign_in_reuses_account(store, userinfo):
    first = await establish_local_session("valyu-access", store)
    userinfo["user"] = FederatedUser(sub="valyu|123", email="ada@example.com", name="Ada King")
    second = await establish_local_session("valyu-access", store)

    assert second.created is False
    assert second.user_id == first.user_id
    assert len(store.users) == 1
    assert store.users[first.user_id]["user_metadata"]["full_name"] == "Ada King"
    assert second.token_hash != first.token_hash


@pytest.mark.asyncio
async def test_sign_in_token_resolves_to_user(store, userinfo):
    session = await establish_local_session("valyu-access", store)

    user = await store.get_user_by_session_token(session.token_hash)

    assert user["id"] == session.user_id


@pytest.mark.asyncio
async def test_missing_email_is_rejected(store, userinfo):
    userinfo["user"] = FederatedUser(sub="valyu|999", email=None)

    with pytest.raises(OAuthError) as excinfo:
        await establish_local_session("valyu-access", store)

    assert excinfo.value.code == "missing_email"
    assert store.users == {}


@pytest.mark.asyncio
async def test_missing_token_is_rejected(store):
    with pytest.raises(OAuthError) as excinfo:
        await establish_local_session("", store)

    assert excinfo.value.code == "missing_token"


@pytest.mark.asyncio
async def test_lookup_failure_is_reported(store, userinfo, monkeypatch):
    async def lost(email, metadata):
        raise LookupError("Existing user not found")

    monkeypatch.setattr(store, "provision_user", lost)

    with pytest.raises(OAuthError) as excinfo:
        await establish_local_session("valyu-access", store)

    assert excinfo.value.code == "user_lookup_failed"
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_concurrent_first_sign_ins_create_one_account(store, userinfo):
    first, second = await asyncio.gather(
        establish_local_session("valyu-access", store),
        establish_local_session("valyu-access", store),
    )

    assert first.user_id == second.user_id
    assert sorted([first.created, second.created]) == [False, True]
    assert len(store.users) == 1
