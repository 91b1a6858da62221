import importlib.util
from pathlib import Path

import pytest

from conftest import STRONG_PASSWORD
from framegate.service.errors import PasswordPolicyError
from framegate.service.runtime import get_runtime
from framegate.storage.models import Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    module_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module.bootstrap_admin


async def test_creates_verified_admin(bootstrap):
    result = await bootstrap("root@example.com", STRONG_PASSWORD)
    assert result["status"] == "created"
    user = get_runtime().store.get_user_by_email("root@example.com")
    assert user.role is Role.ADMIN
    assert user.is_email_verified


async def test_promotes_existing_user(bootstrap):
    await get_runtime().auth.create_account("staff@example.com", STRONG_PASSWORD)
    result = await bootstrap("staff@example.com", "ignored")
    assert result["status"] == "promoted"
    assert (await bootstrap("staff@example.com", "ignored"))["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap("root@example.com", STRONG_PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("root@example.com") is None


async def test_weak_password_rejected(bootstrap):
    with pytest.raises(PasswordPolicyError):
        await bootstrap("root@example.com", "weak")


async def test_generated_password_can_sign_in(bootstrap):
    result = await bootstrap("root@example.com")
    assert result["status"] == "created"
    password = result["generated_password"]
    session = await get_runtime().auth.login("root@example.com", password)
    assert session.user.role is Role.ADMIN


async def test_dry_run_reports_entropy(bootstrap, capsys):
    await bootstrap("root@example.com", STRONG_PASSWORD, dry_run=True)
    assert "bits)" in capsys.readouterr().out
