from __future__ import annotations

import pytest

from shiftledger.errors import AuthError
from shiftledger.roles import SqlRoleResolver, is_admin_role, require_admin


@pytest.mark.parametrize("role", ["admin", "super_admin", " Admin "])
def test_admin_roles_pass(role) -> None:
    assert is_admin_role(role)
    assert require_admin(role) == role.strip().lower()


@pytest.mark.parametrize(("role", "status"), [(None, 401), ("", 401), ("employee", 403), ("manager", 403)])
def test_other_roles_are_rejected(role, status) -> None:
    with pytest.raises(AuthError) as excinfo:
        require_admin(role)
    assert excinfo.value.status_code == status
    assert excinfo.value.to_dict()["error"] == "AuthError"


def test_sql_role_resolver(session_factory, seed) -> None:
    admin_id = seed.admin(role="super_admin")
    worker = seed.employee("Ada")
    resolver = SqlRoleResolver(session_factory)

    assert resolver.get_role(admin_id) == "super_admin"
    assert resolver.get_role(worker) == "employee"
    assert resolver.get_role("missing") is None
    assert resolver.get_role("") is None
