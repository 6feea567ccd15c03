"""HTTP API tests against a real aiohttp server on a temp database."""

from __future__ import annotations

from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import test_utils

from reward_economy.api import collect_metrics, rate_limit_group
from reward_economy.config import EconomyConfig
from reward_economy.main import EconomyApp
from reward_economy.verifiers import IpReputation, VerifierUnavailable

from tests.conftest import make_config_dict, seed_account

FINGERPRINT = {
    "androidId": "a1b2c3",
    "buildFingerprint": "google/redfin/redfin:13",
    "buildModel": "Pixel 5",
    "buildManufacturer": "Google",
    "screenResolution": "1080x2340",
}


def auth(uid: str) -> dict[str, str]:
    return {"Authorization": f"Bearer token-{uid}", "X-Forwarded-For": "39.45.12.7"}


@pytest.fixture
def api_config(tmp_db_path: str) -> EconomyConfig:
    return EconomyConfig(**make_config_dict(
        database={"path": tmp_db_path},
        admins={"boss": "super_admin", "mod": "moderator"},
        root_accounts=[{"uid": "root", "referral_code": "KCSTART2"}],
    ))


@pytest_asyncio.fixture
async def economy(
    api_config: EconomyConfig,
    mock_identity: AsyncMock,
    mock_integrity: AsyncMock,
    mock_ip_reputation: AsyncMock,
) -> EconomyApp:
    app = EconomyApp(
        api_config,
        identity=mock_identity,
        integrity=mock_integrity,
        ip_reputation=mock_ip_reputation,
    )
    await app.initialize()
    return app


@pytest_asyncio.fixture
async def client(economy: EconomyApp) -> AsyncGenerator[test_utils.TestClient, None]:
    async with test_utils.TestClient(test_utils.TestServer(economy.build_web_app())) as test_client:
        yield test_client


async def _signup(client: test_utils.TestClient, uid: str, code: str = "KCSTART2") -> str:
    resp = await client.post("/users/create", headers=auth(uid), json={
        "phone": f"+92300{uid}", "referralCode": code, "deviceFingerprint": FINGERPRINT,
    })
    assert resp.status == 201
    return (await resp.json())["referralCode"]


class TestAuth:
    async def test_missing_token(self, client: test_utils.TestClient):
        resp = await client.get("/users/profile")
        assert resp.status == 401

    async def test_bad_token(self, client: test_utils.TestClient):
        resp = await client.get("/users/profile", headers={"Authorization": "Bearer nope"})
        assert resp.status == 401
        assert (await resp.json())["error"] == "Invalid or expired token"

    async def test_validate_referral_is_public(self, client: test_utils.TestClient):
        resp = await client.post("/users/validate-referral", json={"code": "kcstart2"})
        assert resp.status == 200
        assert await resp.json() == {"valid": True}

        resp = await client.post("/users/validate-referral", json={"code": "KCWRONG1"})
        assert await resp.json() == {"valid": False}

    async def test_admin_routes_need_role(self, client: test_utils.TestClient):
        resp = await client.get("/admin/dashboard", headers=auth("alice"))
        assert resp.status == 403
        resp = await client.get("/withdrawals/admin/pending", headers=auth("alice"))
        assert resp.status == 403

    async def test_unban_needs_super_admin(self, client: test_utils.TestClient):
        resp = await client.post("/admin/unban", headers=auth("mod"), json={"targetUid": "x"})
        assert resp.status == 403


class TestUsers:
    async def test_signup_and_profile(self, client: test_utils.TestClient, economy: EconomyApp):
        code = await _signup(client, "alice")

        resp = await client.get("/users/profile", headers=auth("alice"))
        profile = await resp.json()

        assert profile["referralCode"] == code
        assert profile["invitedBy"] == "root"
        assert (await economy.db.get_account("root"))["balance"] == 3

    async def test_signup_requires_fields(self, client: test_utils.TestClient):
        resp = await client.post("/users/create", headers=auth("alice"), json={"phone": "1"})
        assert resp.status == 400

    async def test_signup_twice_conflicts(self, client: test_utils.TestClient):
        await _signup(client, "alice")
        resp = await client.post("/users/create", headers=auth("alice"), json={
            "phone": "+92", "referralCode": "KCSTART2", "deviceFingerprint": FINGERPRINT,
        })
        assert resp.status == 409

    async def test_invalid_json(self, client: test_utils.TestClient):
        resp = await client.post(
            "/users/create", headers={**auth("alice"), "Content-Type": "application/json"},
            data="{not json",
        )
        assert resp.status == 400

    async def test_profile_missing(self, client: test_utils.TestClient):
        resp = await client.get("/users/profile", headers=auth("ghost"))
        assert resp.status == 404


class TestSecurity:
    async def test_attest_ok(self, client: test_utils.TestClient):
        await _signup(client, "alice")
        resp = await client.post("/security/attest", headers=auth("alice"), json={
            "integrityToken": "tok", "deviceFingerprint": FINGERPRINT, "appVersion": 3,
        })
        assert resp.status == 200
        assert await resp.json() == {"allowed": True, "banned": False}

    async def test_attest_vpn_bans(
        self, client: test_utils.TestClient, economy: EconomyApp, mock_ip_reputation: AsyncMock,
    ):
        await _signup(client, "alice")
        mock_ip_reputation.lookup.return_value = IpReputation(is_vpn=True)

        resp = await client.post("/security/attest", headers=auth("alice"), json={
            "integrityToken": "tok", "deviceFingerprint": FINGERPRINT,
        })

        assert resp.status == 403
        assert await resp.json() == {"allowed": False, "banned": True, "reason": "vpn_detected"}
        mock_ip_reputation.lookup.assert_awaited_with("39.45.12.7")

    async def test_attest_verifier_outage_is_503(
        self, client: test_utils.TestClient, economy: EconomyApp, mock_integrity: AsyncMock,
    ):
        await _signup(client, "alice")
        mock_integrity.decode.side_effect = VerifierUnavailable("integrity", "timeout")

        resp = await client.post("/security/attest", headers=auth("alice"), json={
            "integrityToken": "tok", "deviceFingerprint": FINGERPRINT,
        })

        assert resp.status == 503
        assert (await economy.db.get_account("alice"))["status"] == "active"

    async def test_report(self, client: test_utils.TestClient):
        await _signup(client, "alice")
        resp = await client.post("/security/report", headers=auth("alice"), json={
            "violations": ["hooking"], "evidence": {"frida": True},
        })
        assert resp.status == 403
        assert (await resp.json())["reason"] == "hooking_detected"


class TestTasks:
    async def test_claim_and_status(self, client: test_utils.TestClient):
        await _signup(client, "alice")

        resp = await client.post("/tasks/claim", headers=auth("alice"), json={"taskType": "task_1"})
        body = await resp.json()
        assert resp.status == 200
        assert body["success"] is True
        assert body["reward"] == 20

        resp = await client.post("/tasks/claim", headers=auth("alice"), json={"taskType": "task_2"})
        body = await resp.json()
        assert resp.status == 400
        assert body["error"] == "Task cooldown active"
        assert "nextTaskAt" in body

        resp = await client.get("/tasks/status", headers=auth("alice"))
        status = await resp.json()
        assert status["taskProgress"]["task_1"] == "completed"

    async def test_claim_unknown_user(self, client: test_utils.TestClient):
        resp = await client.post("/tasks/claim", headers=auth("ghost"), json={"taskType": "task_1"})
        assert resp.status == 404

    async def test_claim_requires_task_type(self, client: test_utils.TestClient):
        resp = await client.post("/tasks/claim", headers=auth("alice"), json={})
        assert resp.status == 400

    async def test_spin_and_history(self, client: test_utils.TestClient):
        await _signup(client, "alice")

        resp = await client.post("/tasks/spin", headers=auth("alice"))
        body = await resp.json()
        assert resp.status == 200
        assert body["success"] is True
        assert "spinId" in body

        resp = await client.get("/tasks/spin/history", headers=auth("alice"))
        history = (await resp.json())["history"]
        assert len(history) == 1


class TestWithdrawals:
    async def test_request_and_admin_reject(self, client: test_utils.TestClient, economy: EconomyApp):
        await seed_account(economy.db, "alice", balance=800)

        resp = await client.post("/withdrawals/request", headers=auth("alice"), json={
            "method": "jazzcash", "amount": 600, "accountNumber": "03001234567",
        })
        assert resp.status == 200
        wid = (await resp.json())["withdrawalId"]

        resp = await client.get("/withdrawals/admin/pending", headers=auth("mod"))
        assert [w["withdrawalId"] for w in (await resp.json())["withdrawals"]] == [wid]

        resp = await client.post(
            "/withdrawals/admin/reject", headers=auth("mod"), json={"withdrawalId": wid},
        )
        assert resp.status == 200
        assert (await economy.db.get_account("alice"))["balance"] == 800

        resp = await client.get("/withdrawals/history", headers=auth("alice"))
        assert (await resp.json())["withdrawals"][0]["status"] == "rejected"

    async def test_request_validation_status(self, client: test_utils.TestClient, economy: EconomyApp):
        await seed_account(economy.db, "alice", balance=800)
        resp = await client.post("/withdrawals/request", headers=auth("alice"), json={
            "method": "jazzcash", "amount": 100, "accountNumber": "03001234567",
        })
        assert resp.status == 400
        assert (await resp.json())["error"] == "Minimum withdrawal is PKR 500"

    async def test_whole_float_amount(self, client: test_utils.TestClient, economy: EconomyApp):
        await seed_account(economy.db, "alice", balance=800)
        resp = await client.post("/withdrawals/request", headers=auth("alice"), json={
            "method": "jazzcash", "amount": 600.0, "accountNumber": "03001234567",
        })
        assert resp.status == 200
        assert (await resp.json())["amount"] == 600

    async def test_insufficient_is_conflict(self, client: test_utils.TestClient, economy: EconomyApp):
        await seed_account(economy.db, "alice", balance=100)
        resp = await client.post("/withdrawals/request", headers=auth("alice"), json={
            "method": "jazzcash", "amount": 500, "accountNumber": "03001234567",
        })
        assert resp.status == 409

    async def test_approve_unknown(self, client: test_utils.TestClient):
        resp = await client.post(
            "/withdrawals/admin/approve", headers=auth("boss"), json={"withdrawalId": "nope"},
        )
        assert resp.status == 404


class TestAdmin:
    async def test_ban_unban_cycle(self, client: test_utils.TestClient, economy: EconomyApp):
        await _signup(client, "alice")

        resp = await client.post("/admin/ban", headers=auth("mod"), json={
            "targetUid": "alice", "reason": "suspicious_behavior",
        })
        assert resp.status == 200
        assert (await economy.db.get_account("alice"))["status"] == "banned"

        resp = await client.post("/admin/unban", headers=auth("boss"), json={"targetUid": "alice"})
        assert resp.status == 200
        assert (await economy.db.get_account("alice"))["status"] == "active"

    async def test_ban_invalid_reason(self, client: test_utils.TestClient):
        resp = await client.post("/admin/ban", headers=auth("mod"), json={
            "targetUid": "alice", "reason": "nope",
        })
        assert resp.status == 400

    async def test_user_detail_and_search(self, client: test_utils.TestClient):
        await _signup(client, "alice")

        resp = await client.get("/admin/users/alice", headers=auth("mod"))
        assert (await resp.json())["user"]["uid"] == "alice"

        resp = await client.get("/admin/users/ghost", headers=auth("mod"))
        assert resp.status == 404

        resp = await client.get(
            "/admin/users", headers=auth("mod"), params={"query": "root", "field": "uid"},
        )
        assert [u["uid"] for u in (await resp.json())["users"]] == ["root"]

    async def test_dashboard_and_logs(self, client: test_utils.TestClient):
        await _signup(client, "alice")
        await client.post("/admin/ban", headers=auth("mod"), json={"targetUid": "alice"})

        dashboard = await (await client.get("/admin/dashboard", headers=auth("mod"))).json()
        assert dashboard["totalUsers"] == 2
        assert dashboard["activeBans"] == 1

        logs = await (await client.get("/admin/fraud-logs", headers=auth("mod"))).json()
        assert logs["logs"][0]["reason"] == "admin_manual_ban"

        actions = await (await client.get("/admin/actions", headers=auth("mod"))).json()
        assert actions["actions"][0]["action"] == "ban_user"


class TestOps:
    async def test_health(self, client: test_utils.TestClient):
        resp = await client.get("/health")
        body = await resp.json()
        assert resp.status == 200
        assert body["database"] == "connected"
        assert body["accounts"] == 1

    async def test_metrics(self, client: test_utils.TestClient):
        await _signup(client, "alice")
        resp = await client.get("/metrics")
        text = await resp.text()
        assert "economy_accounts_created_total 1" in text
        assert "economy_total_circulation 3" in text

    async def test_collect_metrics_lines(self, economy: EconomyApp):
        lines = await collect_metrics(economy)
        assert 'economy_commission_jobs{status="pending"} 0' in lines

    async def test_rate_limit(self, tmp_db_path: str, mock_identity: AsyncMock):
        config = EconomyConfig(**make_config_dict(
            database={"path": tmp_db_path},
            rate_limits={"general": 2, "auth": 2, "tasks": 2, "security": 2},
        ))
        economy = EconomyApp(config, identity=mock_identity, integrity=AsyncMock(),
                             ip_reputation=AsyncMock())
        await economy.initialize()
        async with test_utils.TestClient(test_utils.TestServer(economy.build_web_app())) as test_client:
            statuses = [
                (await test_client.get("/users/profile", headers=auth("alice"))).status
                for _ in range(3)
            ]
            health = await test_client.get("/health")
        assert statuses == [404, 404, 429]
        assert health.status == 200
        assert economy.rate_limiter.rejected == 1


class TestHelpers:
    @pytest.mark.parametrize("path,group", [
        ("/users/create", "auth"),
        ("/users/validate-referral", "auth"),
        ("/tasks/claim", "tasks"),
        ("/withdrawals/request", "tasks"),
        ("/security/attest", "security"),
        ("/admin/dashboard", "general"),
    ])
    def test_rate_limit_group(self, path: str, group: str):
        assert rate_limit_group(path) == group

    async def test_client_ip_prefers_forwarded_for(self, client: test_utils.TestClient, economy: EconomyApp):
        seen: dict[str, str] = {}

        async def _lookup(ip: str) -> IpReputation:
            seen["ip"] = ip
            return IpReputation()

        economy.ip_reputation.lookup.side_effect = _lookup
        await _signup(client, "alice")
        await client.post("/security/attest", json={
            "integrityToken": "tok", "deviceFingerprint": FINGERPRINT,
        }, headers={**auth("alice"), "X-Forwarded-For": "41.1.2.3, 10.0.0.1"})
        assert seen["ip"] == "41.1.2.3"
