"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
controllers do the work; these classes only own the domain shape.

User mirrors a row of the udata table. SessionUser mirrors a row of the
v_usess view (user columns joined with the owning session) and is also the
unit stored in the look-aside cache, so it knows how to serialize itself.

Account kinds:
  Usernames that start with "+" belong to passwordless (federated) accounts
  and are persisted as "+<name>:<service>". The column format is kept for
  compatibility with existing databases, but code should reason about the
  LocalAccount / FederatedAccount variant returned by parse_account() rather
  than sniffing the prefix itself.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Union

FEDERATED_PREFIX = "+"

# uid stored in the cache for a token the store has confirmed invalid
INVALID_SENTINEL_UID = -1

# Never exposed by get_safe_user_data()
_SENSITIVE_FIELDS = ("upass", "usalt", "sid", "token", "expire")


# ---------------------------------------------------------------------------
# Account variant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocalAccount:
    """Account authenticated with a local password."""

    name: str

    @property
    def uname(self) -> str:
        return self.name


@dataclass(frozen=True)
class FederatedAccount:
    """Passwordless account vouched for by an external identity service."""

    name: str
    service: str

    @property
    def uname(self) -> str:
        return f"{FEDERATED_PREFIX}{self.name}:{self.service}"


Account = Union[LocalAccount, FederatedAccount]


def parse_account(uname: str) -> Account:
    """Map a persisted username to its account variant."""
    if not uname.startswith(FEDERATED_PREFIX):
        return LocalAccount(uname)
    name, sep, service = uname[len(FEDERATED_PREFIX) :].rpartition(":")
    if not sep:
        # malformed federated name, keep whatever follows the prefix
        return FederatedAccount(name=service, service="")
    return FederatedAccount(name=name, service=service)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A row of udata.

    upass / usalt are None for passwordless accounts. email uniqueness is
    enforced by UserManager, not by a constraint.
    """

    uid: int
    uname: str
    upass: str | None = None
    usalt: str | None = None
    since: datetime | None = None
    email: str | None = None
    email_verified: int = 0
    fname: str | None = None
    site: str | None = None

    @property
    def account(self) -> Account:
        return parse_account(self.uname)

    @property
    def is_passwordless(self) -> bool:
        return not self.usalt


@dataclass
class SessionUser:
    """A row of v_usess: the user owning a live session plus the session columns.

    Adding, removing, or renaming fields changes the cache payload. Entries
    written by an older layout fail from_dict() and are discarded as misses.
    """

    uid: int
    uname: str
    sid: int
    token: str
    expire: datetime | None = None
    upass: str | None = None
    usalt: str | None = None
    since: datetime | None = None
    email: str | None = None
    email_verified: int = 0
    fname: str | None = None
    site: str | None = None

    @property
    def account(self) -> Account:
        return parse_account(self.uname)

    @property
    def is_passwordless(self) -> bool:
        return not self.usalt

    def safe_dict(self) -> dict:
        """Return the record without credentials and session secrets."""
        data = asdict(self)
        for key in _SENSITIVE_FIELDS:
            data.pop(key, None)
        if data["since"] is not None:
            data["since"] = data["since"].isoformat()
        return data

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("expire", "since"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return json.dumps(data)

    @classmethod
    def from_dict(cls, data: dict) -> SessionUser:
        """Rebuild a record from a decoded cache payload.

        Raises ValueError or TypeError on a payload that does not describe a
        session user; the resolver treats that as a cache miss.
        """
        data = dict(data)
        for key in ("expire", "since"):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> SessionUser:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("cache payload is not an object")
        return cls.from_dict(data)
