from orderflow.core.config import DEFAULT_ROLE_GRANTS
from orderflow.services.base.authorization_service import RolePermissionService


class TestRolePermissionService:

    def setup_method(self):
        self.permissions = RolePermissionService(DEFAULT_ROLE_GRANTS)

    def test_owner_capability_requires_ownership(self):
        assert self.permissions.check("cust_1", "customer", "order:cancel:own", {"owner_id": "cust_1"})
        assert not self.permissions.check("cust_1", "customer", "order:cancel:own", {"owner_id": "cust_2"})

    def test_customer_cannot_act_on_others(self):
        assert not self.permissions.check("cust_1", "customer", "order:cancel:any", {"owner_id": "cust_2"})

    def test_admin_wildcard(self):
        assert self.permissions.check("admin_1", "admin", "event:approve:any", {"owner_id": "cust_2"})
        assert self.permissions.check("root", "super_admin", "rental:cancel:any", {})

    def test_unknown_role_has_no_grants(self):
        assert not self.permissions.check("x", "visitor", "order:cancel:any", {})
        assert self.permissions.grants_for("visitor") == []

    def test_grants_are_exact_per_kind(self):
        assert self.permissions.check("c1", "courier", "order:dispatch:any", {})
        assert not self.permissions.check("c1", "courier", "rental:confirm_pickup:any", {})
