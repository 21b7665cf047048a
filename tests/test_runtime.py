import pytest

from conftest import PASSWORD
from tenantauth.requests import SignInRequest
from tenantauth.service import runtime as runtime_module
from tenantauth.service.runtime import ADMIN_ROLE, Runtime, get_runtime


@pytest.fixture
def seeded_settings(settings):
    settings.admin_email = "root@example.com"
    settings.admin_password = PASSWORD
    settings.tenant_organisations = ["Acme"]
    settings.tenant_establishments = ["Acme:HQ", "Globex:Main"]
    return settings


class TestBootstrap:
    def test_bootstrap_is_idempotent(self, store, seeded_settings, notifier, clock):
        rt = Runtime(seeded_settings, store=store, notifier=notifier, clock=clock)
        first = rt.bootstrap()
        assert first == {
            "organisations_created": 2,
            "establishments_created": 2,
            "admin": "created",
        }
        second = rt.bootstrap()
        assert second == {
            "organisations_created": 0,
            "establishments_created": 0,
            "admin": "existing",
        }
        assert rt.roles.get_by_name(ADMIN_ROLE).claims[0].resource == "*"
        rt.close()

    async def test_admin_can_sign_in(self, store, seeded_settings, notifier, clock):
        rt = Runtime(seeded_settings, store=store, notifier=notifier, clock=clock)
        rt.bootstrap()
        response = await rt.auth.sign_in(
            SignInRequest(email="root@example.com", password=PASSWORD)
        )
        assert response.user_account.role_names == [ADMIN_ROLE]
        scope = rt.scope.authorize(response.user_account, ["delete:any:users"])
        assert scope.restricts("users") is False
        rt.close()

    def test_existing_user_is_promoted(self, runtime, make_member):
        make_member(email="root@example.com")
        runtime.settings.admin_email = "root@example.com"
        runtime.settings.admin_password = PASSWORD
        assert runtime.bootstrap()["admin"] == "promoted"
        account = runtime.accounts.find_by_user_and_tenant(
            runtime.users.find_by_email("root@example.com").id
        )
        assert set(account.role_names) == {"user", ADMIN_ROLE}

    def test_no_admin_without_password(self, runtime):
        assert runtime.bootstrap()["admin"] is None


class TestSweep:
    async def test_sweep_removes_expired_sessions_and_tokens(
        self, runtime, make_member, clock
    ):
        user, account = make_member()
        await runtime.jwt.authenticate(account, PASSWORD)
        await runtime.auth.send_reset_password(user.email, "https://app.example.com")
        clock.advance(hours=3)
        assert runtime.sweep() == (1, 1)
        assert runtime.sweep() == (0, 0)

    def test_sweeper_disabled_by_default(self, runtime):
        assert runtime.start_sweeper() is False

    def test_sweeper_thread_lifecycle(self, runtime):
        runtime.settings.session_sweep_interval_seconds = 60
        assert runtime.start_sweeper() is True
        assert runtime.start_sweeper() is False
        runtime.stop_sweeper()
        assert runtime._sweep_thread is None


class TestGlobalRuntime:
    def test_get_runtime_reuses_instance(self):
        assert get_runtime() is get_runtime()
        assert get_runtime() is runtime_module.runtime
