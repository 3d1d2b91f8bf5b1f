"""
auth/schema.py -- Table installation and upgrades.

ensure_schema() is called once at startup (see api/main.py lifespan) and
guarantees that udata, usess, v_usess and meta exist and match
TABLE_VERSION before the first request is served.

Flow:
  1. Probe udata with a cheap SELECT.
  2. Missing -> install everything and seed the root account (uid=1,
     username "root", password "admin").
  3. Present -> usess and v_usess must exist too, otherwise an earlier
     install stopped halfway and SchemaError is raised. Then read
     meta.version. A missing meta table means the tables
     predate versioning and count as "0.0". Older versions run through the
     ordered _UPGRADES chain; the final version is written back.

Every DDL statement is fatal on failure. A half-applied schema cannot be
used safely and is never retried silently: SchemaError propagates and the
application refuses to start.

Email note:
  UNIQUE on a nullable column is not portable, so email has no constraint.
  UserManager checks uniqueness before insert. Email verification is out of
  scope; the table only reserves the email_verified column.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError

from auth.errors import SchemaError
from auth.store import AdminStore
from auth.tokens import SALT_LENGTH, derive_secret, hash_password

logger = logging.getLogger("keygate.auth.schema")

TABLE_VERSION = "1.0"

ROOT_UID = 1
ROOT_NAME = "root"
ROOT_PASSWORD = "admin"

_DROP_STATEMENTS = (
    "DROP VIEW IF EXISTS v_usess",
    "DROP TABLE IF EXISTS usess",
    "DROP TABLE IF EXISTS udata",
    "DROP TABLE IF EXISTS meta",
)


def _version_key(version: str) -> tuple[int, ...]:
    parts = []
    for part in version.split("."):
        try:
            parts.append(int(part))
        except ValueError:
            parts.append(0)
    return tuple(parts)


class SchemaManager:
    """Installs and upgrades the persisted layout for one store.

    Args:
        store:      Store whose engine receives the DDL.
        expiration: Standard session lifetime in seconds, used as the
                    server-side default for usess.expire.
    """

    def __init__(self, store: AdminStore, expiration: int = 7200) -> None:
        self.store = store
        self.expiration = expiration

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def ensure(self) -> str:
        """Install or upgrade as needed. Returns the resulting table version.

        Raises SchemaError when udata exists without usess or v_usess, i.e.
        an install that stopped halfway. Only reinstall() recovers from that.
        """
        if not self._tables_exist():
            self.install()
            return TABLE_VERSION
        missing = self._missing_relations()
        if missing:
            logger.error("Incomplete tables, missing %s; reinstall required", ", ".join(missing))
            raise SchemaError(f"Incomplete tables, missing: {', '.join(missing)}")
        return self.upgrade()

    def reinstall(self) -> str:
        """Drop every relation and install from scratch. Destroys all data."""
        logger.warning("Reinstalling tables; existing users and sessions are dropped")
        for statement in _DROP_STATEMENTS:
            self._ddl(statement)
        self.install()
        return TABLE_VERSION

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def _default(self, expression: str) -> str:
        # MySQL only accepts a bare CURRENT_TIMESTAMP as a TIMESTAMP default
        if self.store.dbtype == "mysql":
            return "CURRENT_TIMESTAMP"
        return f"({expression})"

    def install(self) -> None:
        store = self.store
        index = store.fragment_index()
        engine = store.fragment_engine()
        dtnow = self._default(store.fragment_datetime())
        expire = self._default(store.fragment_datetime(self.expiration))

        self._ddl(
            f"""
            CREATE TABLE udata (
                uid {index},
                uname VARCHAR(64) UNIQUE,
                upass VARCHAR(64),
                usalt VARCHAR(16),
                since TIMESTAMP NOT NULL DEFAULT {dtnow},
                email VARCHAR(64),
                email_verified INT NOT NULL DEFAULT 0,
                fname VARCHAR(128),
                site VARCHAR(128)
            ) {engine}
            """
        )
        self._seed_root()

        self._ddl(
            f"""
            CREATE TABLE usess (
                sid {index},
                uid INTEGER,
                token VARCHAR(64),
                expire TIMESTAMP NOT NULL DEFAULT {expire},
                FOREIGN KEY (uid) REFERENCES udata(uid) ON DELETE CASCADE
            ) {engine}
            """
        )
        self._ddl(
            """
            CREATE VIEW v_usess AS
                SELECT
                    udata.*,
                    usess.sid,
                    usess.token,
                    usess.expire
                FROM udata, usess
                WHERE udata.uid = usess.uid
            """
        )
        self._create_meta()
        self.store.set_version(TABLE_VERSION)
        logger.info("Tables installed (version %s)", TABLE_VERSION)

    def _seed_root(self) -> None:
        salt = derive_secret(ROOT_NAME, None, SALT_LENGTH)
        try:
            self.store.create_user(
                uname=ROOT_NAME,
                upass=hash_password(ROOT_NAME, ROOT_PASSWORD, salt),
                usalt=salt,
                uid=ROOT_UID,
            )
            self.store.sync_uid_sequence()
        except DBAPIError as e:
            logger.error("Seeding root account failed: %s", e)
            raise SchemaError(f"Seeding root account failed: {e}") from e

    def _create_meta(self) -> None:
        self._ddl(
            f"""
            CREATE TABLE IF NOT EXISTS meta (
                version VARCHAR(24) NOT NULL DEFAULT '0.0'
            ) {self.store.fragment_engine()}
            """
        )

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    def upgrade(self) -> str:
        try:
            version = self.store.get_version() or "0.0"
        except DBAPIError:
            # no meta table: tables predate versioning
            version = "0.0"
        if _version_key(version) >= _version_key(TABLE_VERSION):
            logger.debug("Tables are up-to-date (version %s)", version)
            return version
        return self._upgrade_tables(version)

    def _upgrade_tables(self, from_version: str) -> str:
        version = from_version
        for step_from, step in _UPGRADES:
            if _version_key(version) > _version_key(step_from):
                continue
            new_version = step(self)
            logger.info("Upgrading tables: '%s' -> '%s'", version, new_version)
            version = new_version
        self.store.set_version(TABLE_VERSION)
        return TABLE_VERSION

    def _upgrade_0_0(self) -> str:
        self._create_meta()
        return "1.0"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tables_exist(self) -> bool:
        return self._relation_exists("udata")

    def _missing_relations(self) -> list[str]:
        return [name for name in ("usess", "v_usess") if not self._relation_exists(name)]

    def _relation_exists(self, name: str) -> bool:
        try:
            self.store.probe(f"SELECT 1 FROM {name} LIMIT 1")
        except DBAPIError:
            return False
        return True

    def _ddl(self, statement: str) -> None:
        try:
            self.store.execute_ddl(statement)
        except DBAPIError as e:
            logger.error("DDL failed, aborting schema setup: %s", e)
            raise SchemaError(f"DDL failed: {e}") from e


# Ordered (from_version, step) pairs. Each step upgrades exactly one version
# and returns the version it produced.
_UPGRADES = (("0.0", SchemaManager._upgrade_0_0),)


def ensure_schema(store: AdminStore, expiration: int = 7200, force: bool = False) -> str:
    """Make the store usable. With force=True, drop and reinstall everything."""
    manager = SchemaManager(store, expiration)
    if force:
        return manager.reinstall()
    return manager.ensure()
