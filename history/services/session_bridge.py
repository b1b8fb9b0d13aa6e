from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from history.services.logger import log_event
from history.services.oauth import OAuthError, fetch_user_info
from history.services.store import Store, get_store


@dataclass(slots=True)
class LocalSession:
    user_id: str
    email: str
    token_hash: str
    user: dict[str, Any]
    created: bool = False

    def to_response(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "token_hash": self.token_hash,
            "tokenHash": self.token_hash,
            "user": self.user,
        }


async def establish_local_session(access_token: str, store: Store | None = None) -> LocalSession:
    """Map a Valyu access token onto a local account and mint a sign-in token.

    Safe to call repeatedly for the same person: the account is provisioned
    idempotently by email.
    """
    if not access_token:
        raise OAuthError("missing_token", "valyu_access_token is required")
    store = store if store is not None else get_store()

    federated = await fetch_user_info(access_token)
    if not federated.email:
        raise OAuthError("missing_email", "Valyu user does not have an email")

    try:
        account = await store.provision_user(federated.email, federated.metadata())
    except LookupError as e:
        raise OAuthError("user_lookup_failed", str(e), status_code=500) from e
    except OAuthError:
        raise
    except Exception as e:
        raise OAuthError("create_user_failed", str(e), status_code=500) from e

    try:
        token_hash = await store.create_sign_in_token(federated.email)
    except Exception as e:
        raise OAuthError("session_failed", str(e), status_code=500) from e

    log_event(
        event_type="session_established",
        message="Valyu user signed in",
        user_id=account.id,
        created=account.created,
    )
    return LocalSession(
        user_id=account.id,
        email=federated.email,
        token_hash=token_hash,
        created=account.created,
        user={
            "id": account.id,
            "email": federated.email,
            "name": federated.name,
            "avatar_url": federated.picture,
            "valyu_sub": federated.sub,
            "valyu_organisation_id": federated.organisation_id,
            "valyu_organisation_name": federated.organisation_name,
        },
    )
