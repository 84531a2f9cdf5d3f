from unittest.mock import patch

from tests.base import EngineTestBase

from backoffice.core.config import settings
from backoffice.models.role import Role
from backoffice.services.activation import ActivationGate
from backoffice.services.roles import RoleRepository, RoleService


class RoleActivationGateTests(EngineTestBase):
    def setUp(self):
        super().setUp()
        self.admin = self._role("admin")
        self.editor = self._role("editor")
        self.viewer = self._role("viewer")
        self.archived = self._role("archived", is_active=False)
        self._user("Ana", roles=[self.editor])
        self.service = RoleService(self.db)

    def _active(self):
        with self._fresh_session() as db:
            return {role.name: role.is_active for role in db.query(Role).all()}

    def test_protected_role_is_never_deactivated(self):
        self.assertEqual(self.service.bulk_set_active_by_ids([self.admin.id], False), 0)
        self.assertTrue(self._active()["admin"])

    def test_deactivation_skips_protected_and_roles_with_users(self):
        ids = [self.admin.id, self.editor.id, self.viewer.id, self.archived.id]
        self.assertEqual(self.service.bulk_set_active_by_ids(ids, False), 1)
        self.assertEqual(
            self._active(),
            {"admin": True, "editor": True, "viewer": False, "archived": False},
        )

    def test_activation_only_touches_inactive_roles(self):
        ids = [self.admin.id, self.archived.id]
        self.assertEqual(self.service.bulk_set_active_by_ids(ids, True), 1)
        self.assertEqual(self.service.bulk_set_active_by_ids(ids, True), 0)

    def test_guards_follow_settings(self):
        with patch.object(settings, "ROLES_BLOCK_DEACTIVATE_IF_HAS_USERS", False):
            self.assertEqual(self.service.bulk_set_active_by_uuids([str(self.editor.uuid)], False), 1)
        with patch.object(settings, "ROLES_BLOCK_DEACTIVATE_PROTECTED", False):
            self.assertEqual(self.service.bulk_set_active_by_uuids([str(self.admin.uuid)], False), 1)
        self.assertEqual(self._active()["editor"], False)
        self.assertEqual(self._active()["admin"], False)

    def test_soft_deleted_users_do_not_block_deactivation(self):
        ana = self.db.query(Role).filter(Role.name == "editor").one().users[0]
        ana.deleted_at = ana.created_at
        self.db.commit()
        self.assertEqual(self.service.bulk_set_active_by_ids([self.editor.id], False), 1)

    def test_empty_input_returns_zero(self):
        self.assertEqual(self.service.bulk_set_active_by_ids([], False), 0)


class ActivationGateTests(EngineTestBase):
    def test_guard_chain_without_dependents_lookup(self):
        self._role("admin")
        self._role("ops")
        repo = RoleRepository(self.db)
        gate = ActivationGate(protected_names=frozenset({"admin"}), block_if_has_dependents=True)
        ids = [role.id for role in repo.all()]
        self.assertEqual(gate.apply(repo, "id", ids, False), 1)
        self.assertEqual(gate.apply(repo, "id", ids, False), 0)

    def test_dependents_lookup_sees_only_survivors(self):
        admin = self._role("admin")
        ops = self._role("ops")
        self._role("qa")
        repo = RoleRepository(self.db)
        seen = []

        def dependents(db, ids):
            seen.append(sorted(ids))
            return {ops.id}

        gate = ActivationGate(
            protected_names=frozenset({"admin"}),
            dependents=dependents,
            block_if_has_dependents=True,
        )
        ids = [role.id for role in repo.all()]
        self.assertEqual(gate.apply(repo, "id", ids, False), 1)
        self.assertEqual(len(seen), 1)
        self.assertEqual(len(seen[0]), 2)
        self.assertNotIn(admin.id, seen[0])

    def test_protection_can_be_switched_off(self):
        self._role("admin")
        repo = RoleRepository(self.db)
        gate = ActivationGate(protected_names=frozenset({"admin"}), block_protected=False)
        self.assertEqual(gate.apply(repo, "id", [role.id for role in repo.all()], False), 1)
