import unittest

from tests.base import EngineTestBase

from backoffice.models.role import Role
from backoffice.schemas.query import ListQuery
from backoffice.services.roles import RoleRepository
from backoffice.services.sorting import apply_sort, resolve_sort

ALLOWED = {"id", "name", "created_at"}


class ResolveSortTests(unittest.TestCase):
    def test_unlisted_column_uses_whole_default_pair(self):
        self.assertEqual(resolve_sort("password_hash", "asc", ALLOWED, ("created_at", "asc")), ("created_at", "asc"))
        self.assertEqual(resolve_sort("password_hash", "desc", ALLOWED, ("created_at", "asc")), ("created_at", "asc"))

    def test_missing_column_uses_default(self):
        self.assertEqual(resolve_sort(None, "asc", ALLOWED, ("id", "desc")), ("id", "desc"))
        self.assertEqual(resolve_sort("", None, ALLOWED, ("id", "desc")), ("id", "desc"))

    def test_allowed_column_keeps_requested_direction(self):
        self.assertEqual(resolve_sort("name", "asc", ALLOWED, ("id", "desc")), ("name", "asc"))
        self.assertEqual(resolve_sort("name", "desc", ALLOWED, ("id", "asc")), ("name", "desc"))

    def test_malformed_direction_falls_back_to_desc(self):
        self.assertEqual(resolve_sort("name", "sideways", ALLOWED, ("id", "asc")), ("name", "desc"))
        self.assertEqual(resolve_sort("name", None, ALLOWED, ("id", "asc")), ("name", "desc"))


class ApplySortTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.read = self._permission("roles.view")
        self.write = self._permission("roles.update")
        self._role("beta", permissions=[self.read])
        self._role("alpha", permissions=[self.read, self.write])
        self._role("gamma")

    def test_orders_by_column(self):
        asc = apply_sort(self.db.query(Role), Role, "name", "asc").all()
        desc = apply_sort(self.db.query(Role), Role, "name", "desc").all()
        self.assertEqual([role.name for role in asc], ["alpha", "beta", "gamma"])
        self.assertEqual([role.name for role in desc], ["gamma", "beta", "alpha"])

    def test_unknown_column_without_expression_is_ignored(self):
        query = self.db.query(Role)
        self.assertIs(apply_sort(query, Role, "nope", "asc"), query)

    def test_repository_sorts_by_relation_count_expression(self):
        repo = RoleRepository(self.db)
        result = repo.list(ListQuery(sort="permissions_count", dir="desc"))
        self.assertEqual([role.name for role in result.rows], ["alpha", "beta", "gamma"])

    def test_repository_applies_default_sort_for_unlisted_column(self):
        repo = RoleRepository(self.db)
        result = repo.list(ListQuery(sort="password_hash", dir="asc"))
        self.assertEqual([role.name for role in result.rows], ["gamma", "alpha", "beta"])
