"""
auth/controller.py -- Operations performed by or for the signed-in user.

AuthController wraps one SessionResolver (one per request) and implements
login, logout, password change and profile change. Every method returns a
Result(errno, data); none raises for expected failures.

login() returns the new token but does not adopt it. The caller (e.g. the
HTTP layer) decides how to hand it to the client and feeds it back through
set_token_value() on the next request.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping

from auth.errors import ErrorCode, Result
from auth.resolver import SessionResolver, require_fields
from auth.tokens import derive_secret, hash_password, verify_password_pair, verify_site_url

logger = logging.getLogger("keygate.auth")


class AuthController:
    """Login, logout and self-service account changes."""

    def __init__(self, resolver: SessionResolver) -> None:
        self.resolver = resolver

    @property
    def store(self):
        return self.resolver.store

    def login(self, args: Mapping | None) -> Result:
        """Sign in with {"uname", "upass"}.

        Returns Result(OK, {"uid", "uname", "token"}) on success.
        """
        if self.resolver.is_logged_in():
            return Result(ErrorCode.ALREADY_LOGGED_IN)

        fields = require_fields(args, ("uname", "upass"))
        if fields is None:
            return Result(ErrorCode.DATA_INCOMPLETE)
        uname, upass = fields["uname"], fields["upass"]

        user = self.store.get_by_username(uname)
        if user is None or user.is_passwordless:
            # passwordless accounts cannot sign in with a password
            return Result(ErrorCode.USER_NOT_FOUND)

        matched = self.store.match_password(uname, hash_password(uname, upass, user.usalt))
        if matched is None:
            logger.warning("login: wrong password: '%s'", uname)
            return Result(ErrorCode.WRONG_PASSWORD)

        token = derive_secret(f"{upass}{user.usalt}{time.time_ns()}", user.usalt)
        self.store.create_session(matched.uid, token, self.resolver.get_expiration())

        logger.info("login: OK: '%s'", uname)
        return Result(ErrorCode.OK, {"uid": matched.uid, "uname": matched.uname, "token": token})

    def logout(self) -> Result:
        """Close the current session and forget the token."""
        udata = self.resolver.get_user_data()
        if udata is None:
            return Result(ErrorCode.NOT_LOGGED_IN)

        self.resolver.close_session(udata.sid)
        self.resolver.reset()

        logger.info("logout: OK: '%s'", udata.uname)
        return Result(ErrorCode.OK)

    def change_password(self, args: Mapping | None, require_old_password: bool = False) -> Result:
        """Change the current user's password.

        args holds "pass1" and "pass2" (new password, twice) and, when
        require_old_password is set, "pass0" (current password). A failed
        pair check returns PASSWORD_INVALID with the specific reason as data.
        """
        udata = self.resolver.get_user_data()
        if udata is None:
            return Result(ErrorCode.NOT_LOGGED_IN)
        if udata.is_passwordless:
            return Result(ErrorCode.USER_NOT_FOUND)

        keys = ["pass1", "pass2"]
        if require_old_password:
            keys.append("pass0")
        fields = require_fields(args, keys)
        if fields is None:
            return Result(ErrorCode.DATA_INCOMPLETE)

        uname, usalt = udata.uname, udata.usalt
        if require_old_password and self.store.match_password(uname, hash_password(uname, fields["pass0"], usalt)) is None:
            logger.warning("chpasswd: old password invalid: '%s'", uname)
            return Result(ErrorCode.OLD_PASSWORD_INVALID)

        reason = verify_password_pair(fields["pass1"], fields["pass2"])
        if reason != ErrorCode.OK:
            logger.warning("chpasswd: new password invalid: '%s'", uname)
            return Result(ErrorCode.PASSWORD_INVALID, reason)

        self.store.update_user(udata.uid, upass=hash_password(uname, fields["pass1"], usalt))
        # cached record carries the old hash
        self.resolver.invalidate()

        logger.info("chpasswd: OK: '%s'", uname)
        return Result(ErrorCode.OK)

    def change_bio(self, args: Mapping | None) -> Result:
        """Update "fname" and/or "site". Absent or blank fields are left alone."""
        udata = self.resolver.get_user_data()
        if udata is None:
            return Result(ErrorCode.NOT_LOGGED_IN)

        changes = {}
        for key in ("fname", "site"):
            value = (args or {}).get(key)
            if value is None:
                continue
            value = str(value).strip()
            if value:
                changes[key] = value
        if not changes:
            return Result(ErrorCode.OK)

        if "site" in changes and verify_site_url(changes["site"]) is None:
            logger.warning("chbio: site URL invalid: '%s'", changes["site"])
            return Result(ErrorCode.SITE_URL_INVALID)

        self.store.update_user(udata.uid, **changes)

        # let the next read reload from the store
        self.resolver.invalidate()
        udata = self.resolver.get_user_data()

        logger.info("chbio: OK: '%s'", udata.uname if udata else "?")
        return Result(ErrorCode.OK)
