from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from jose import jwt

from app.core.config import get_settings


ALGORITHM = "HS256"


def create_access_token(subject: str, roles: Iterable[str] = (), expires_minutes: int | None = None) -> str:
    settings = get_settings()
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    claims = {"sub": subject, "roles": list(roles), "exp": int(expire.timestamp())}
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller of a mutating operation, with request origin for the audit trail."""

    id: str
    roles: frozenset[str] = frozenset()
    ip: str | None = None
    user_agent: str | None = None

    @property
    def origin(self) -> dict[str, str | None]:
        return {"ip": self.ip, "user_agent": self.user_agent}

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return not self.roles.isdisjoint(roles)


SYSTEM_ACTOR = Actor(id="system", roles=frozenset({"system"}))
