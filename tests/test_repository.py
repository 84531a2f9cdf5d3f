import os
import threading
import time
import unittest
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy import create_engine, delete
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from tests.base import EngineTestBase

from backoffice.core.errors import NotFound
from backoffice.db.session import Base
from backoffice.models.permission import Permission
from backoffice.models.role import Role, role_permissions
from backoffice.models.user import User, user_roles
from backoffice.schemas.query import ListQuery, ShowQuery
from backoffice.services.repository import BaseRepository
from backoffice.services.roles import RoleRepository
from backoffice.services.users import UserRepository


class PermissionRepository(BaseRepository):
    model = Permission
    searchable = ("name", "description")


class RepositoryListTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.repo = PermissionRepository(self.db)
        for index in range(1, 8):
            self._permission(f"perm.{index}", description="Reports" if index % 2 else None)

    def test_list_paginates_with_default_sort(self):
        result = self.repo.list(ListQuery(page=2, per_page=3))
        self.assertEqual([row.name for row in result.rows], ["perm.4", "perm.3", "perm.2"])
        self.assertEqual(result.meta.total, 7)
        self.assertEqual(result.meta.last_page, 3)
        self.assertEqual(result.meta.current_page, 2)

    def test_paginate_is_list(self):
        self.assertEqual(
            [row.id for row in self.repo.paginate(ListQuery(per_page=2)).rows],
            [row.id for row in self.repo.list(ListQuery(per_page=2)).rows],
        )

    def test_search_and_filters_compose(self):
        result = self.repo.list(ListQuery(q="reports", filters={"name_like": "perm.1"}))
        self.assertEqual([row.name for row in result.rows], ["perm.1"])

    def test_paginate_by_ids_desc(self):
        ids = [row.id for row in self.repo.all()][:4]
        result = self.repo.paginate_by_ids_desc(ids, per_page=3)
        self.assertEqual([row.id for row in result.rows], sorted(ids, reverse=True)[:3])
        self.assertEqual(result.meta.total, 4)

    def test_paginate_by_empty_ids_skips_storage(self):
        with patch.object(self.repo, "base_query") as base_query:
            result = self.repo.paginate_by_ids_desc([], per_page=10)
        base_query.assert_not_called()
        self.assertEqual(result.rows, [])
        self.assertEqual(result.meta.total, 0)

    def test_count_and_exists(self):
        self.assertEqual(self.repo.count(), 7)
        self.assertEqual(self.repo.count({"description": "Reports"}), 4)
        first = self.repo.all()[0]
        self.assertTrue(self.repo.exists_by_id(first.id))
        self.assertFalse(self.repo.exists_by_id(999))


class RepositoryLookupTests(EngineTestBase):
    def test_create_then_find_round_trip(self):
        repo = RoleRepository(self.db)
        created = repo.create({"name": "auditor", "guard_name": "api"})
        self.db.commit()
        found = repo.find_by_id(created.id)
        self.assertEqual((found.name, found.guard_name, found.is_active), ("auditor", "api", True))
        self.assertEqual(repo.find_by_uuid(str(created.uuid)).id, created.id)

    def test_missing_records(self):
        repo = RoleRepository(self.db)
        self.assertIsNone(repo.find_by_id(404))
        self.assertIsNone(repo.find_by_uuid("not-a-uuid"))
        self.assertIsNone(repo.find_by_uuid(uuid4()))
        with self.assertRaises(NotFound):
            repo.find_or_fail_by_id(404)
        with self.assertRaises(NotFound):
            repo.find_or_fail_by_uuid(str(uuid4()))
        self.assertFalse(repo.exists_by_uuid(str(uuid4())))

    def test_show_expands_relations_and_counts(self):
        read = self._permission("roles.view")
        role = self._role("editor", permissions=[read])
        self._user("Ana", roles=[role])
        self.db.expire_all()
        record = RoleRepository(self.db).show_by_id(role.id, ShowQuery(with_={"permissions"}, with_count={"users"}))
        self.assertIn("permissions", record.__dict__)
        self.assertEqual(record.users_count, 1)
        with self.assertRaises(NotFound):
            RoleRepository(self.db).show_by_uuid("bad", ShowQuery())

    def test_counts_exclude_soft_deleted_targets(self):
        role = self._role("editor")
        self._user("Ana", roles=[role])
        gone = self._user("Bob", roles=[role])
        gone.deleted_at = gone.created_at
        self.db.commit()
        result = RoleRepository(self.db).list(ListQuery(), counts=["users"])
        self.assertEqual(result.rows[0].users_count, 1)


class RepositorySoftDeleteTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.repo = UserRepository(self.db)
        self.ana = self._user("Ana")
        self.bob = self._user("Bob")

    def test_delete_is_soft_and_restorable(self):
        self.assertTrue(self.repo.delete(self.ana.id))
        self.db.commit()
        self.assertIsNone(self.repo.find_by_id(self.ana.id))
        self.assertEqual(self.db.query(User).count(), 2)
        with self.assertRaises(NotFound):
            self.repo.show_by_id(self.ana.id, ShowQuery())
        self.assertEqual(self.repo.show_by_id(self.ana.id, ShowQuery(with_trashed=True)).name, "Ana")

        self.assertTrue(self.repo.restore(self.ana.id))
        self.db.commit()
        self.assertIsNotNone(self.repo.find_by_id(self.ana.id))

    def test_force_delete_removes_trashed_record(self):
        self.repo.delete(self.ana.id)
        self.db.commit()
        self.assertTrue(self.repo.force_delete(self.ana.id))
        self.db.commit()
        self.assertEqual(self.db.query(User).count(), 1)

    def test_restore_on_hard_delete_resource_is_noop(self):
        role = self._role("editor")
        repo = RoleRepository(self.db)
        with patch.object(repo, "resolve") as resolve:
            self.assertFalse(repo.restore(role.id))
        resolve.assert_not_called()
        self.assertTrue(repo.delete(role.id))
        self.db.commit()
        self.assertEqual(self.db.query(Role).count(), 0)

    def test_with_trashed_ignored_without_soft_delete(self):
        role = self._role("editor")
        record = RoleRepository(self.db).show_by_id(role.id, ShowQuery(with_trashed=True))
        self.assertEqual(record.id, role.id)


class RepositoryBulkTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.repo = UserRepository(self.db)
        self.users = [self._user(name) for name in ("Ana", "Bob", "Cid")]
        self.ids = [user.id for user in self.users]

    def test_empty_bulk_inputs_return_zero_without_storage_call(self):
        with patch.object(self.repo, "base_query") as base_query:
            self.assertEqual(self.repo.bulk_delete_by_ids([]), 0)
            self.assertEqual(self.repo.bulk_force_delete_by_uuids([]), 0)
            self.assertEqual(self.repo.bulk_restore_by_ids([]), 0)
            self.assertEqual(self.repo.bulk_set_active_by_ids([], False), 0)
        base_query.assert_not_called()

    def test_bulk_delete_and_restore(self):
        self.assertEqual(self.repo.bulk_delete_by_ids(self.ids[:2]), 2)
        self.db.commit()
        self.assertEqual(self.repo.count(), 1)
        self.assertEqual(self.repo.bulk_delete_by_ids(self.ids[:2]), 0)
        self.assertEqual(self.repo.bulk_restore_by_ids(self.ids), 2)
        self.db.commit()
        self.assertEqual(self.repo.count(), 3)

    def test_bulk_force_delete_by_uuids(self):
        uuids = [str(user.uuid) for user in self.users[:2]] + ["garbage"]
        self.assertEqual(self.repo.bulk_force_delete_by_uuids(uuids), 2)
        self.db.commit()
        self.assertEqual(self.db.query(User).count(), 1)

    def test_bulk_set_active_is_idempotent(self):
        self.assertEqual(self.repo.bulk_set_active_by_ids(self.ids[:2], False), 2)
        self.db.commit()
        self.assertEqual(self.repo.bulk_set_active_by_ids(self.ids[:2], False), 0)
        self.assertEqual(self.repo.bulk_set_active_by_ids(self.ids, True), 2)
        self.db.commit()
        self.assertEqual(self.repo.count({"is_active": True}), 3)

    def test_set_active_single(self):
        record = self.repo.set_active(self.ids[0], False)
        self.db.commit()
        self.assertFalse(record.is_active)


class RepositoryUpsertTests(EngineTestBase):
    def test_upsert_inserts_and_updates_by_unique_key(self):
        repo = PermissionRepository(self.db)
        self._permission("roles.view", description="old")
        affected = repo.upsert(
            [
                {"name": "roles.view", "description": "View roles"},
                {"name": "roles.create", "description": "Create roles"},
            ],
            unique_by=["name"],
            update_columns=["description"],
        )
        self.db.commit()
        self.assertEqual(affected, 2)
        rows = {row.name: row.description for row in self._fresh_session().query(Permission).all()}
        self.assertEqual(rows, {"roles.view": "View roles", "roles.create": "Create roles"})


class RepositoryLockTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.repo = RoleRepository(self.db)
        self.role = self._role("editor")

    def _stored_name(self):
        with self._fresh_session() as db:
            return db.get(Role, self.role.id).name

    def test_lock_commits_callback_changes(self):
        def rename(record):
            record.name = "publisher"
            return record.id

        self.assertEqual(self.repo.with_pessimistic_lock_by_id(self.role.id, rename), self.role.id)
        self.assertEqual(self._stored_name(), "publisher")

    def test_lock_rolls_back_when_callback_fails(self):
        def explode(record):
            record.name = "broken"
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.repo.with_pessimistic_lock_by_uuid(str(self.role.uuid), explode)
        self.assertEqual(self._stored_name(), "editor")

    def test_lock_on_missing_record_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.repo.with_pessimistic_lock_by_id(404, lambda record: record)

    def test_lock_query_selects_for_update(self):
        sql = str(self.repo.locked_query("id", 1).statement.compile(dialect=postgresql.dialect()))
        self.assertIn("FOR UPDATE", sql)

    def test_sequential_locks_see_previous_committed_write(self):
        def rename(record):
            record.name = "publisher"

        self.repo.with_pessimistic_lock_by_id(self.role.id, rename)
        with self._fresh_session() as db:
            seen = RoleRepository(db).with_pessimistic_lock_by_id(self.role.id, lambda record: record.name)
        self.assertEqual(seen, "publisher")


class PostgresLockSerializationTests(unittest.TestCase):
    """Runs only when BACKOFFICE_TEST_POSTGRES_URL points at a scratch PostgreSQL database."""

    @classmethod
    def setUpClass(cls):
        url = os.environ.get("BACKOFFICE_TEST_POSTGRES_URL")
        if not url:
            raise unittest.SkipTest("row locks need PostgreSQL; set BACKOFFICE_TEST_POSTGRES_URL")
        cls.engine = create_engine(url)
        cls.tables = [Permission.__table__, Role.__table__, User.__table__, role_permissions, user_roles]
        Base.metadata.create_all(cls.engine, tables=cls.tables)
        cls.SessionLocal = sessionmaker(bind=cls.engine, autocommit=False, autoflush=False)

    @classmethod
    def tearDownClass(cls):
        Base.metadata.drop_all(cls.engine, tables=cls.tables)
        cls.engine.dispose()

    def setUp(self):
        with self.SessionLocal() as db:
            role = Role(name="editor", guard_name="web")
            db.add(role)
            db.commit()
            self.role_id = role.id

    def tearDown(self):
        with self.SessionLocal() as db:
            db.execute(delete(Role))
            db.commit()

    def test_concurrent_locks_serialize(self):
        events = []
        first_holds_lock = threading.Event()
        seen = {}

        def first():
            def rename(record):
                first_holds_lock.set()
                time.sleep(0.5)
                record.name = "publisher"
                events.append("first-done")

            with self.SessionLocal() as db:
                RoleRepository(db).with_pessimistic_lock_by_id(self.role_id, rename)

        def second():
            first_holds_lock.wait(5)

            def read(record):
                events.append("second-start")
                seen["name"] = record.name

            with self.SessionLocal() as db:
                RoleRepository(db).with_pessimistic_lock_by_id(self.role_id, read)

        workers = [threading.Thread(target=first), threading.Thread(target=second)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(10)

        self.assertEqual(events, ["first-done", "second-start"])
        self.assertEqual(seen["name"], "publisher")
