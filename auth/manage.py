"""
auth/manage.py -- Registration, deletion and listing of users.

Authorization is a pluggable strategy. UserManager asks an
AuthorizationPolicy whether the current user may add, delete or list; the
DefaultPolicy grants add/list to root only, and delete to root (for any
account but its own) or to a user deleting themselves. Applications swap in
their own policy at construction time:

    class StaffPolicy(DefaultPolicy):
        def authorize_list(self, user):
            return user.uname in {"root", "john"}

    manage = UserManager(resolver, policy=StaffPolicy())

Whatever the policy says, root (uid=1) can never be deleted.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy.exc import IntegrityError

from auth.errors import ErrorCode, Result
from auth.models import FEDERATED_PREFIX, FederatedAccount, SessionUser
from auth.resolver import SessionResolver, require_fields
from auth.schema import ROOT_UID
from auth.tokens import derive_secret, generate_nonce, generate_salt, hash_password, verify_email, verify_password_pair

logger = logging.getLogger("keygate.auth")

MAX_USERNAME_BYTES = 64
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 40  # exclusive

_WHITESPACE = (" ", "\n", "\r", "\t")


# ---------------------------------------------------------------------------
# Authorization strategy
# ---------------------------------------------------------------------------


class AuthorizationPolicy:
    """Decides who may manage users. Override any method; all deny by default."""

    def authorize_add(self, user: SessionUser) -> bool:
        return False

    def authorize_delete(self, user: SessionUser, uid: int) -> bool:
        return False

    def authorize_list(self, user: SessionUser) -> bool:
        return False


class DefaultPolicy(AuthorizationPolicy):
    """Root manages everyone; any user may delete their own account."""

    def authorize_add(self, user: SessionUser) -> bool:
        return user.uid == ROOT_UID

    def authorize_delete(self, user: SessionUser, uid: int) -> bool:
        if user.uid == ROOT_UID and uid != ROOT_UID:
            return True
        return user.uid == uid

    def authorize_list(self, user: SessionUser) -> bool:
        return self.authorize_add(user)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def verify_username(uname: str) -> ErrorCode:
    """Check a new local username. Multi-byte characters are allowed."""
    if len(uname.encode("utf-8")) > MAX_USERNAME_BYTES:
        return ErrorCode.USERNAME_TOO_LONG
    if any(white in uname for white in _WHITESPACE):
        return ErrorCode.USERNAME_HAS_WHITESPACE
    if uname.startswith(FEDERATED_PREFIX):
        # reserved for passwordless accounts
        return ErrorCode.USERNAME_LEADING_PLUS
    return ErrorCode.OK


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class UserManager:
    """User administration bound to one request's resolver."""

    def __init__(self, resolver: SessionResolver, policy: AuthorizationPolicy | None = None) -> None:
        self.resolver = resolver
        self.policy = policy if policy is not None else DefaultPolicy()

    @property
    def store(self):
        return self.resolver.store

    # ------------------------------------------------------------------
    # Authorization predicates for the current user
    # ------------------------------------------------------------------

    def authorize_add(self) -> bool:
        user = self.resolver.get_user_data()
        return user is not None and self.policy.authorize_add(user)

    def authorize_delete(self, uid: int) -> bool:
        user = self.resolver.get_user_data()
        return user is not None and self.policy.authorize_delete(user, uid)

    def authorize_list(self) -> bool:
        user = self.resolver.get_user_data()
        return user is not None and self.policy.authorize_list(user)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add(
        self,
        args: Mapping | None,
        require_password_twice: bool = False,
        allow_self_register: bool = False,
        require_email: bool = False,
    ) -> Result:
        """Register a local account.

        args keys: "addname", "addpass1", plus "addpass2" when
        require_password_twice and "email" when require_email.

        Returns Result(OK, {"uid", "uname"}) on success.
        """
        if self.resolver.is_logged_in():
            if not self.authorize_add():
                return Result(ErrorCode.NOT_AUTHORIZED)
        elif not allow_self_register:
            return Result(ErrorCode.SELF_REGISTER_NOT_ALLOWED)

        keys = ["addname", "addpass1"]
        if require_password_twice:
            keys.append("addpass2")
        if require_email:
            keys.append("email")
        fields = require_fields(args, keys)
        if fields is None:
            return Result(ErrorCode.DATA_INCOMPLETE)
        addname = fields["addname"]

        code = verify_username(addname)
        if code != ErrorCode.OK:
            logger.warning("usradd: name invalid: '%s'", addname)
            return Result(code)

        email = None
        if require_email:
            email = verify_email(fields["email"])
            if email is None:
                logger.warning("usradd: email invalid: '%s' <- '%s'", addname, fields["email"])
                return Result(ErrorCode.EMAIL_INVALID)
            if self.store.email_exists(email):
                logger.warning("usradd: email exists: '%s' <- '%s'", addname, email)
                return Result(ErrorCode.EMAIL_EXISTS)

        addpass1 = fields["addpass1"]
        addpass2 = fields["addpass2"] if require_password_twice else addpass1
        code = verify_password_pair(addpass1, addpass2)
        if code != ErrorCode.OK:
            logger.warning("usradd: password invalid: '%s'", addname)
            return Result(code)

        usalt = generate_salt(addname, addpass1)
        try:
            uid = self.store.create_user(
                uname=addname,
                upass=hash_password(addname, addpass1, usalt),
                usalt=usalt,
                email=email,
            )
        except IntegrityError:
            logger.info("usradd: user exists: '%s'", addname)
            return Result(ErrorCode.USERNAME_EXISTS)

        logger.info("usradd: OK: %s:'%s'", uid, addname)
        return Result(ErrorCode.OK, {"uid": uid, "uname": addname})

    def self_add(self, args: Mapping | None, require_password_twice: bool = False, require_email: bool = False) -> Result:
        """Self-registration: add() for a caller who is not signed in."""
        if self.resolver.is_logged_in():
            return Result(ErrorCode.ALREADY_LOGGED_IN)
        return self.add(args, require_password_twice, True, require_email)

    def self_add_passwordless(self, args: Mapping | None) -> Result:
        """Sign in, creating the account on first use, for an externally vouched identity.

        args keys: "uname" and "uservice". The pair must be unique per person;
        verifying the identity (OAuth, mail link, ...) is the caller's job.
        There is no separate sign-up step.

        Returns Result(OK, {"uid", "uname", "token", "sid"}). sid is exposed
        so callers can link the session to the identity provider's records.
        """
        if self.resolver.is_logged_in():
            return Result(ErrorCode.ALREADY_LOGGED_IN)

        fields = require_fields(args, ("uname", "uservice"))
        if fields is None:
            return Result(ErrorCode.DATA_INCOMPLETE)
        account = FederatedAccount(name=fields["uname"], service=fields["uservice"])
        dbuname = account.uname
        if len(dbuname.encode("utf-8")) > MAX_USERNAME_BYTES:
            return Result(ErrorCode.USERNAME_TOO_LONG)

        user = self.store.get_by_username(dbuname)
        if user is not None:
            uid = user.uid
        else:
            try:
                uid = self.store.create_user(uname=dbuname)
            except IntegrityError:
                # created by a concurrent request
                user = self.store.get_by_username(dbuname)
                if user is None:
                    raise
                uid = user.uid

        # no salt on passwordless accounts, key the token by the plain name
        token = derive_secret(dbuname + generate_nonce(), account.name)
        sid = self.store.create_session(uid, token, self.resolver.get_expiration())

        logger.info("usradd: OK: %s:'%s'", uid, dbuname)
        return Result(ErrorCode.OK, {"uid": uid, "uname": dbuname, "token": token, "sid": sid})

    # ------------------------------------------------------------------
    # Deletion and listing
    # ------------------------------------------------------------------

    def delete(self, args: Mapping | None) -> Result:
        """Delete the user given by {"uid"} along with its sessions."""
        udata = self.resolver.get_user_data()
        if udata is None:
            return Result(ErrorCode.NOT_LOGGED_IN)

        fields = require_fields(args, ("uid",))
        if fields is None:
            return Result(ErrorCode.DATA_INCOMPLETE)
        uid = _to_int(fields["uid"], 0)
        if uid <= 0:
            return Result(ErrorCode.DATA_INCOMPLETE)

        if not self.authorize_delete(uid):
            return Result(ErrorCode.NOT_AUTHORIZED)
        if uid == ROOT_UID:
            return Result(ErrorCode.NOT_AUTHORIZED)

        if self.store.get_by_id(uid) is None:
            logger.warning("usrdel: not found: uid=%s", uid)
            return Result(ErrorCode.USER_NOT_FOUND)

        # cached positive entries would outlive the cascaded session rows
        self.resolver.drop_cached_tokens(self.store.get_live_tokens(uid))
        self.store.delete_user(uid)
        if uid == udata.uid:
            self.resolver.reset()

        logger.info("usrdel: OK: uid=%s", uid)
        return Result(ErrorCode.OK)

    def list(self, args: Mapping | None = None) -> Result:
        """Return one page of users.

        args keys (all optional): "page" (>= 0, default 0), "limit"
        (1..39, default 10) and "order" ("ASC" or "DESC" on uid).
        Out-of-range values fall back to the defaults instead of failing.
        """
        if not self.resolver.is_logged_in():
            return Result(ErrorCode.NOT_LOGGED_IN)
        if not self.authorize_list():
            return Result(ErrorCode.NOT_AUTHORIZED)

        args = args or {}
        page = _to_int(args.get("page"), 0)
        if page < 0:
            page = 0
        limit = _to_int(args.get("limit"), DEFAULT_PAGE_LIMIT)
        if limit <= 0 or limit >= MAX_PAGE_LIMIT:
            limit = DEFAULT_PAGE_LIMIT
        order = args.get("order")
        if order not in ("ASC", "DESC"):
            order = None

        return Result(ErrorCode.OK, self.store.list_users(limit=limit, offset=page * limit, order=order))
