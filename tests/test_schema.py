"""
tests/test_schema.py -- Tests for auth/schema.py install and upgrade paths.

Covers:
  - fresh install creates tables, records TABLE_VERSION and seeds root/admin
  - ensure_schema() is idempotent on an installed store
  - tables without a meta table are upgraded from "0.0"
  - force=True wipes existing users
  - deleting a user cascades to its sessions
  - udata without usess or v_usess raises SchemaError until reinstalled
  - failing DDL raises SchemaError
"""

from __future__ import annotations

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import DBAPIError

from auth.errors import SchemaError
from auth.schema import ROOT_NAME, ROOT_UID, TABLE_VERSION, SchemaManager, ensure_schema
from auth.store import AdminStore
from auth.tokens import hash_password


@pytest.fixture
def bare_store():
    s = AdminStore("sqlite:///:memory:")
    yield s
    s.close()


class TestInstall:
    def test_fresh_install(self, bare_store: AdminStore) -> None:
        assert ensure_schema(bare_store) == TABLE_VERSION
        assert bare_store.get_version() == TABLE_VERSION

    def test_root_seeded_with_default_password(self, bare_store: AdminStore) -> None:
        ensure_schema(bare_store)
        root = bare_store.get_by_username(ROOT_NAME)
        assert root is not None
        assert root.uid == ROOT_UID
        assert bare_store.match_password(ROOT_NAME, hash_password(ROOT_NAME, "admin", root.usalt)) is not None

    def test_since_defaults_to_now(self, bare_store: AdminStore) -> None:
        ensure_schema(bare_store)
        assert bare_store.get_by_id(ROOT_UID).since is not None

    def test_next_user_after_root(self, bare_store: AdminStore) -> None:
        ensure_schema(bare_store)
        assert bare_store.create_user("jack", "h", "s") > ROOT_UID

    def test_ensure_is_idempotent(self, store: AdminStore) -> None:
        store.create_user("jack", "h", "s")
        assert ensure_schema(store) == TABLE_VERSION
        assert store.get_by_username("jack") is not None

    def test_force_reinstall_drops_users(self, store: AdminStore) -> None:
        store.create_user("jack", "h", "s")
        ensure_schema(store, force=True)
        assert store.get_by_username("jack") is None
        assert store.get_by_username(ROOT_NAME) is not None


class TestUpgrade:
    def test_missing_meta_upgrades_from_0_0(self, store: AdminStore) -> None:
        store.execute_ddl("DROP TABLE meta")
        assert ensure_schema(store) == TABLE_VERSION
        assert store.get_version() == TABLE_VERSION

    def test_old_version_row_upgraded(self, store: AdminStore) -> None:
        store.execute_ddl("DROP TABLE meta")
        SchemaManager(store)._create_meta()
        store.set_version("0.0")
        assert ensure_schema(store) == TABLE_VERSION
        assert store.get_version() == TABLE_VERSION

    def test_newer_version_left_alone(self, store: AdminStore) -> None:
        store.set_version("2.0")
        assert ensure_schema(store) == "2.0"


class TestCascade:
    def test_delete_user_removes_sessions(self, store: AdminStore) -> None:
        uid = store.create_user("jack", "h", "s")
        store.create_session(uid, "tok-jack", 7200)
        assert store.get_live_tokens(uid) == ["tok-jack"]

        store.delete_user(uid)

        assert store.get_live_tokens(uid) == []
        assert store.get_session_user("tok-jack") is None

    def test_usess_declares_cascading_key(self, store: AdminStore) -> None:
        keys = inspect(store.engine).get_foreign_keys("usess")
        assert len(keys) == 1
        assert keys[0]["referred_table"] == "udata"
        assert keys[0]["constrained_columns"] == ["uid"]
        assert keys[0]["options"].get("ondelete") == "CASCADE"


class TestFailure:
    def test_ddl_error_raises_schema_error(self, store: AdminStore) -> None:
        """Installing over existing tables fails on the first CREATE."""
        with pytest.raises(SchemaError):
            SchemaManager(store).install()


class TestPartialInstall:
    def test_missing_sessions_table_refuses_to_start(self, bare_store: AdminStore) -> None:
        bare_store.execute_ddl("CREATE TABLE udata (uid INTEGER PRIMARY KEY AUTOINCREMENT, uname VARCHAR(64))")
        with pytest.raises(SchemaError, match="usess"):
            ensure_schema(bare_store)
        # nothing was stamped over the half-built tables
        with pytest.raises(DBAPIError):
            bare_store.get_version()

    def test_missing_view_refuses_to_start(self, store: AdminStore) -> None:
        store.execute_ddl("DROP VIEW v_usess")
        with pytest.raises(SchemaError, match="v_usess"):
            ensure_schema(store)

    def test_reinstall_recovers(self, bare_store: AdminStore) -> None:
        bare_store.execute_ddl("CREATE TABLE udata (uid INTEGER PRIMARY KEY AUTOINCREMENT, uname VARCHAR(64))")
        assert ensure_schema(bare_store, force=True) == TABLE_VERSION
        assert ensure_schema(bare_store) == TABLE_VERSION
        assert bare_store.get_by_username(ROOT_NAME) is not None
