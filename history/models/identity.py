from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from history.services.oauth import TokenProvider

LOCAL_USER_ID = "00000000-0000-0000-0000-000000000001"
LOCAL_USER_EMAIL = "dev@localhost"


@dataclass
class CallerSession:
    """Who is calling, and with which provider credential.

    Built once per request by the API layer and passed explicitly to the
    orchestrator, the quota gate and the ledger.
    """

    user_id: str | None = None
    email: str | None = None
    provider_token: TokenProvider | None = None
    anonymous_used: int = 0
    anonymous_id: str | None = None
    is_local: bool = False
    profile: dict[str, Any] = field(default_factory=dict)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @classmethod
    def local(cls) -> CallerSession:
        return cls(user_id=LOCAL_USER_ID, email=LOCAL_USER_EMAIL, is_local=True)


@dataclass(slots=True)
class FederatedUser:
    sub: str
    email: str | None
    name: str | None = None
    picture: str | None = None
    user_type: str | None = None
    organisation_id: str | None = None
    organisation_name: str | None = None

    @classmethod
    def from_userinfo(cls, data: dict[str, Any]) -> FederatedUser:
        return cls(
            sub=str(data.get("sub") or data.get("id") or ""),
            email=data.get("email"),
            name=data.get("name") or data.get("given_name"),
            picture=data.get("picture"),
            user_type=data.get("valyu_user_type"),
            organisation_id=data.get("valyu_organisation_id"),
            organisation_name=data.get("valyu_organisation_name"),
        )

    def metadata(self) -> dict[str, Any]:
        return {
            "valyu_sub": self.sub,
            "full_name": self.name,
            "avatar_url": self.picture,
            "valyu_user_type": self.user_type,
            "valyu_organisation_id": self.organisation_id,
            "valyu_organisation_name": self.organisation_name,
            "provider": "valyu",
        }


@dataclass(slots=True)
class ProvisionedUser:
    id: str
    email: str
    created: bool
