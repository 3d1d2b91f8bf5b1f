"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper. AdminStore is the repository; _row_to_user
/ _row_to_session_user are the mappers. Resolver, controller and manager code
never touches SQL directly.

Security:
  All queries use bound parameters. The only SQL built from strings are the
  dialect fragments below, and those never contain caller input (deltas are
  formatted as integers).

Dialect fragments:
  The tables are created with hand-written DDL (see auth/schema.py) so the
  same layout, including the v_usess view, is produced on SQLite, PostgreSQL
  and MySQL. The fragments fill the dialect-specific holes: the auto-increment
  primary key column, the storage engine clause, and "now plus N seconds".

Time:
  Session expiry is always computed by the database, never by Python, so a
  single clock decides whether a session is live. Connections are switched to
  UTC on PostgreSQL and MySQL; SQLite's datetime('now') is UTC already.

  UNIQUE(email) is enforced in code rather than SQL because NULL handling in
  UNIQUE constraints differs between the supported databases.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, event, literal_column, select, text
from sqlalchemy.engine import Engine

from auth.models import SessionUser, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'keygate_auth.db'}"

# ---------------------------------------------------------------------------
# Table mappings (query side only -- DDL lives in auth/schema.py)
# ---------------------------------------------------------------------------

_metadata = MetaData()

_user_columns = (
    ("uid", Integer),
    ("uname", String(64)),
    ("upass", String(64)),
    ("usalt", String(16)),
    ("since", DateTime),
    ("email", String(64)),
    ("email_verified", Integer),
    ("fname", String(128)),
    ("site", String(128)),
)

_udata = Table(
    "udata",
    _metadata,
    *(Column(name, type_, primary_key=(name == "uid")) for name, type_ in _user_columns),
)

_usess = Table(
    "usess",
    _metadata,
    Column("sid", Integer, primary_key=True, autoincrement=True),
    Column("uid", Integer),
    Column("token", String(64)),
    Column("expire", DateTime),
)

_v_usess = Table(
    "v_usess",
    _metadata,
    *(Column(name, type_) for name, type_ in _user_columns),
    Column("sid", Integer),
    Column("token", String(64)),
    Column("expire", DateTime),
)

_meta = Table(
    "meta",
    _metadata,
    Column("version", String(24)),
)

# Columns returned by list_users(); never includes credentials.
_LIST_COLUMNS = ("uid", "uname", "fname", "site", "since")


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    """Enable foreign keys and WAL mode on every new SQLite connection.

    foreign_keys is off by default in SQLite, and without it the ON DELETE
    CASCADE from usess to udata silently does nothing. Both PRAGMAs are
    per-connection, so they are set here rather than once at startup.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _postgresql_on_connect(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("SET TIME ZONE 'UTC'")
    cursor.close()
    dbapi_conn.commit()


def _mysql_on_connect(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("SET time_zone = '+00:00'")
    cursor.close()


_ON_CONNECT = {
    "sqlite": _sqlite_on_connect,
    "postgresql": _postgresql_on_connect,
    "mysql": _mysql_on_connect,
}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AdminStore:
    """Repository for users, sessions and the schema version row.

    Usage:
        store = AdminStore("sqlite:///auth.db")
        ensure_schema(store, expiration=7200)
        user = store.get_by_username("root")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, engine: Engine | None = None) -> None:
        if engine is None:
            connect_args: dict = {}
            if db_url.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            engine = create_engine(db_url, connect_args=connect_args)
            listener = _ON_CONNECT.get(engine.dialect.name)
            if listener is not None:
                event.listen(engine, "connect", listener)
        self.engine: Engine = engine

    @property
    def dbtype(self) -> str:
        """Dialect name: 'sqlite', 'postgresql' or 'mysql'."""
        return self.engine.dialect.name

    # ------------------------------------------------------------------
    # Dialect fragments
    # ------------------------------------------------------------------

    def fragment_index(self) -> str:
        """Column definition for an auto-increment integer primary key."""
        if self.dbtype == "postgresql":
            return "SERIAL PRIMARY KEY"
        if self.dbtype == "mysql":
            return "INTEGER PRIMARY KEY AUTO_INCREMENT"
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    def fragment_engine(self) -> str:
        """Trailing table option clause."""
        if self.dbtype == "mysql":
            return "ENGINE=InnoDB"
        return ""

    def fragment_datetime(self, delta: int = 0) -> str:
        """SQL expression for the current UTC time shifted by delta seconds."""
        delta = int(delta)
        if self.dbtype == "postgresql":
            if not delta:
                return "NOW()"
            return f"NOW() + INTERVAL '{delta} seconds'"
        if self.dbtype == "mysql":
            if not delta:
                return "CURRENT_TIMESTAMP"
            return f"DATE_ADD(CURRENT_TIMESTAMP, INTERVAL {delta} SECOND)"
        if not delta:
            return "datetime('now')"
        return f"datetime('now', '{delta:+d} seconds')"

    def _at(self, delta: int = 0):
        return literal_column(self.fragment_datetime(delta))

    # ------------------------------------------------------------------
    # Raw statements (schema manager)
    # ------------------------------------------------------------------

    def execute_ddl(self, statement: str) -> None:
        """Run one DDL statement in its own transaction.

        Errors propagate; the schema manager decides whether they are fatal.
        """
        with self.engine.begin() as conn:
            conn.execute(text(statement))

    def probe(self, statement: str):
        """Run a read-only statement and return the first row (or None)."""
        with self.engine.connect() as conn:
            return conn.execute(text(statement)).fetchone()

    def get_version(self) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_meta.c.version).limit(1)).fetchone()
        return row.version if row is not None else None

    def set_version(self, version: str) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(_meta.update().values(version=version))
            if result.rowcount == 0:
                conn.execute(_meta.insert().values(version=version))

    def sync_uid_sequence(self) -> None:
        """Move the PostgreSQL udata.uid sequence past explicitly inserted ids.

        SERIAL columns do not advance when a row is inserted with an explicit
        uid (the seeded root account), so the next registration would collide
        with uid=1. Other dialects track the maximum automatically.
        """
        if self.dbtype != "postgresql":
            return
        with self.engine.begin() as conn:
            conn.execute(text("SELECT setval(pg_get_serial_sequence('udata', 'uid'), (SELECT MAX(uid) FROM udata))"))

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(
        self,
        uname: str,
        upass: str | None = None,
        usalt: str | None = None,
        email: str | None = None,
        uid: int | None = None,
    ) -> int:
        """Insert a new user and return its uid.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        UserManager.add() turns that into USERNAME_EXISTS.
        """
        values = {"uname": uname, "upass": upass, "usalt": usalt, "email": email}
        if uid is not None:
            values["uid"] = uid
        with self.engine.begin() as conn:
            result = conn.execute(_udata.insert().values(**values))
            return uid if uid is not None else result.inserted_primary_key[0]

    def get_by_username(self, uname: str) -> User | None:
        """Look up a user by exact username. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_udata.select().where(_udata.c.uname == uname).limit(1)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, uid: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_udata.select().where(_udata.c.uid == uid).limit(1)).fetchone()
        return _row_to_user(row) if row is not None else None

    def match_password(self, uname: str, upass_hash: str) -> User | None:
        """Return the user whose stored hash matches, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _udata.select().where((_udata.c.uname == uname) & (_udata.c.upass == upass_hash)).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_udata.c.uid).where(_udata.c.email == email).limit(1)).fetchone()
        return row is not None

    def update_user(self, uid: int, **fields) -> bool:
        """Update columns of an existing user.

        Accepted fields: upass, email, email_verified, fname, site. Returns
        True if a row was updated.
        """
        unknown = set(fields) - {"upass", "email", "email_verified", "fname", "site"}
        if unknown:
            raise ValueError(f"Unknown udata columns: {unknown!r}")
        if not fields:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_udata.update().where(_udata.c.uid == uid).values(**fields))
        return result.rowcount > 0

    def delete_user(self, uid: int) -> bool:
        """Delete a user. Its sessions go with it via ON DELETE CASCADE."""
        with self.engine.begin() as conn:
            result = conn.execute(_udata.delete().where(_udata.c.uid == uid))
        return result.rowcount > 0

    def list_users(self, limit: int, offset: int, order: str | None = None) -> list[dict]:
        """Return one page of users without credentials.

        order is "ASC", "DESC" or None (database order). Callers validate
        limit/offset; this method trusts them.
        """
        stmt = select(*(_udata.c[name] for name in _LIST_COLUMNS)).limit(limit).offset(offset)
        if order == "ASC":
            stmt = stmt.order_by(_udata.c.uid.asc())
        elif order == "DESC":
            stmt = stmt.order_by(_udata.c.uid.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            {
                "uid": r.uid,
                "uname": r.uname,
                "fname": r.fname,
                "site": r.site,
                "since": r.since.isoformat() if r.since is not None else None,
            }
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, uid: int, token: str, expiration: int) -> int:
        """Insert a session expiring `expiration` seconds from now; return its sid."""
        with self.engine.begin() as conn:
            result = conn.execute(_usess.insert().values(uid=uid, token=token, expire=self._at(expiration)))
            return result.inserted_primary_key[0]

    def get_session_user(self, token: str) -> SessionUser | None:
        """Return the live session for token joined with its user, or None.

        A session is live while expire is strictly in the future.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _v_usess.select().where((_v_usess.c.token == token) & (_v_usess.c.expire > self._at())).limit(1)
            ).fetchone()
        return _row_to_session_user(row) if row is not None else None

    def set_session_expiry(self, sid: int, delta: int = 0) -> str | None:
        """Move a session's expiry to now + delta seconds. delta=0 closes it.

        Returns the session's token, or None when no row has that sid.
        """
        with self.engine.begin() as conn:
            conn.execute(_usess.update().where(_usess.c.sid == sid).values(expire=self._at(delta)))
            row = conn.execute(select(_usess.c.token).where(_usess.c.sid == sid)).fetchone()
        return row.token if row is not None else None

    def get_live_tokens(self, uid: int) -> list[str]:
        """Tokens of all unexpired sessions owned by uid."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_usess.c.token).where((_usess.c.uid == uid) & (_usess.c.expire > self._at()))
            ).fetchall()
        return [r.token for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        uid=row.uid,
        uname=row.uname,
        upass=row.upass,
        usalt=row.usalt,
        since=row.since,
        email=row.email,
        email_verified=row.email_verified or 0,
        fname=row.fname,
        site=row.site,
    )


def _row_to_session_user(row) -> SessionUser:
    return SessionUser(
        uid=row.uid,
        uname=row.uname,
        sid=row.sid,
        token=row.token,
        expire=row.expire,
        upass=row.upass,
        usalt=row.usalt,
        since=row.since,
        email=row.email,
        email_verified=row.email_verified or 0,
        fname=row.fname,
        site=row.site,
    )
