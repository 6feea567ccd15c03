"""HTTP API (aiohttp.web).

Middleware chain, outermost first: error mapping, rate limiting, bearer-token
authentication with admin role lookup. Handlers translate JSON bodies into
engine calls and engine outcomes into JSON responses.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aiohttp import web

from .outcomes import ErrorKind, Failure
from .rate_limiter import RouteRateLimiter
from .verifiers import VerifierUnavailable

if TYPE_CHECKING:
    from .main import EconomyApp

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

PUBLIC_PATHS = frozenset({"/users/validate-referral"})
ADMIN_PREFIXES = ("/admin/", "/withdrawals/admin/")


def json_error(status: int, message: str, code: str | None = None, **extra: Any) -> web.Response:
    body: dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    body.update(extra)
    return web.json_response(body, status=status)


def failure_response(failure: Failure) -> web.Response:
    return web.json_response(
        {"success": False, "error": failure.message, "code": failure.code},
        status=failure.http_status,
    )


def legacy_status(failure: Failure | None) -> int:
    """Claim and spin rejections answer 400 unless the account is unknown."""
    if failure is not None and failure.kind is ErrorKind.NOT_FOUND:
        return 404
    return 400


def client_ip(request: web.Request, trust_forwarded_for: bool = True) -> str:
    """First X-Forwarded-For hop, else the peer address."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote or "unknown"


def rate_limit_group(path: str) -> str:
    if path in ("/users/validate-referral", "/users/create"):
        return "auth"
    if path.startswith("/tasks/") or path == "/withdrawals/request":
        return "tasks"
    if path.startswith("/security/"):
        return "security"
    return "general"


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"error":"Invalid JSON body"}', content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text='{"error":"JSON body must be an object"}', content_type="application/json",
        )
    return body


def _int_param(request: web.Request, name: str, default: int, maximum: int = 100) -> int:
    try:
        value = int(request.query.get(name, default))
    except ValueError:
        return default
    return max(1, min(value, maximum))


# ═══════════════════════════════════════════════════════════════
#  Metrics
# ═══════════════════════════════════════════════════════════════


async def collect_metrics(economy: EconomyApp) -> list[str]:
    """Prometheus text lines for the economy service."""
    lines: list[str] = []

    # ── Counters ─────────────────────────────────────────
    lines.append(f"economy_requests_total {economy.requests_total}")
    lines.append(f"economy_task_claims_total {economy.tasks.claims_committed}")
    lines.append(f"economy_task_claims_rejected_total {economy.tasks.claims_rejected}")
    lines.append(f"economy_spins_total {economy.spin.spins_committed}")
    lines.append(f"economy_spin_prizes_total {economy.spin.prizes_paid}")
    lines.append(f"economy_bans_total {economy.gate.bans_issued}")
    lines.append(f"economy_attestations_passed_total {economy.gate.attestations_passed}")
    lines.append(f"economy_accounts_created_total {economy.registration.accounts_created}")
    lines.append(f"economy_commissions_paid_total {economy.referrals.commissions_paid}")
    lines.append(f"economy_commission_amount_total {economy.referrals.commission_total}")
    lines.append(f"economy_withdrawals_requested_amount_total {economy.withdrawals.requested_total}")
    lines.append(f"economy_withdrawals_refunded_amount_total {economy.withdrawals.refunded_total}")
    lines.append(f"economy_rate_limited_total {economy.rate_limiter.rejected}")

    # ── Gauges ───────────────────────────────────────────
    lines.append(f"economy_total_circulation {await economy.db.get_total_circulation()}")
    lines.append(f"economy_total_accounts {await economy.db.get_account_count()}")
    lines.append(f"economy_banned_accounts {await economy.db.get_account_count('banned')}")

    jobs = await economy.db.count_commission_jobs()
    for status in ("pending", "done", "dead"):
        lines.append(f'economy_commission_jobs{{status="{status}"}} {jobs.get(status, 0)}')

    return lines


# ═══════════════════════════════════════════════════════════════
#  API
# ═══════════════════════════════════════════════════════════════


class EconomyApi:
    """Route handlers bound to one EconomyApp."""

    def __init__(self, economy: EconomyApp, logger: logging.Logger) -> None:
        self._economy = economy
        self._config = economy.config
        self._logger = logger
        self.rate_limiter: RouteRateLimiter = economy.rate_limiter

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[
            self.error_middleware,
            self.rate_limit_middleware,
            self.auth_middleware,
        ])
        app.router.add_post("/users/validate-referral", self.validate_referral)
        app.router.add_post("/users/create", self.create_user)
        app.router.add_get("/users/profile", self.profile)

        app.router.add_post("/security/attest", self.attest)
        app.router.add_post("/security/report", self.report)

        app.router.add_post("/tasks/claim", self.claim_task)
        app.router.add_get("/tasks/status", self.task_status)
        app.router.add_post("/tasks/spin", self.spin)
        app.router.add_get("/tasks/spin/history", self.spin_history)

        app.router.add_post("/withdrawals/request", self.request_withdrawal)
        app.router.add_get("/withdrawals/history", self.withdrawal_history)
        app.router.add_get("/withdrawals/admin/pending", self.pending_withdrawals)
        app.router.add_get("/withdrawals/admin/all", self.all_withdrawals)
        app.router.add_post("/withdrawals/admin/approve", self.approve_withdrawal)
        app.router.add_post("/withdrawals/admin/reject", self.reject_withdrawal)

        app.router.add_post("/admin/ban", self.admin_ban)
        app.router.add_post("/admin/unban", self.admin_unban)
        app.router.add_get("/admin/users", self.admin_search_users)
        app.router.add_get("/admin/users/{uid}", self.admin_user_detail)
        app.router.add_get("/admin/fraud-logs", self.admin_fraud_logs)
        app.router.add_get("/admin/actions", self.admin_actions)
        app.router.add_get("/admin/dashboard", self.admin_dashboard)

        if self._config.metrics.enabled:
            app.router.add_get(self._config.metrics.health_path, self.health)
            app.router.add_get(self._config.metrics.metrics_path, self.metrics)
        return app

    def _is_open(self, path: str) -> bool:
        metrics = self._config.metrics
        return path in PUBLIC_PATHS or path in (metrics.health_path, metrics.metrics_path)

    # ══════════════════════════════════════════════════════════
    #  Middleware
    # ══════════════════════════════════════════════════════════

    @web.middleware
    async def error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        self._economy.requests_total += 1
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except VerifierUnavailable as e:
            self._logger.error("%s %s: collaborator unavailable: %s", request.method, request.path, e)
            return json_error(503, "Service temporarily unavailable")
        except Exception:
            self._logger.exception("Unhandled error on %s %s", request.method, request.path)
            return json_error(500, "Internal server error")

    @web.middleware
    async def rate_limit_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        limits = self._config.rate_limits
        metrics = self._config.metrics
        if limits.enabled and request.path not in (metrics.health_path, metrics.metrics_path):
            ip = client_ip(request, self._config.server.trust_forwarded_for)
            if not self.rate_limiter.check(rate_limit_group(request.path), ip):
                return json_error(429, "Too many requests, please try again later.")
        return await handler(request)

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if self._is_open(request.path):
            return await handler(request)

        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return json_error(401, "Missing or invalid authorization header")
        uid = await self._economy.identity.verify_token(header[len("Bearer "):].strip())
        if not uid:
            return json_error(401, "Invalid or expired token")
        request["uid"] = uid

        if request.path.startswith(ADMIN_PREFIXES):
            role = await self._economy.admin.role_of(uid)
            if role is None:
                return json_error(403, "Admin access required")
            request["admin_role"] = role
        return await handler(request)

    # ══════════════════════════════════════════════════════════
    #  Users
    # ══════════════════════════════════════════════════════════

    async def validate_referral(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        code = body.get("code")
        if not code or not isinstance(code, str):
            return json_error(400, "Referral code is required")
        inviter = await self._economy.referrals.validate_referral_code(code)
        return web.json_response({"valid": inviter is not None})

    async def create_user(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        phone = body.get("phone")
        referral_code = body.get("referralCode")
        fingerprint = body.get("deviceFingerprint")
        if not phone or not referral_code or not isinstance(fingerprint, dict):
            return json_error(400, "phone, referralCode, and deviceFingerprint are required")

        outcome = await self._economy.registration.register(
            request["uid"],
            str(phone),
            str(referral_code),
            fingerprint,
            client_ip(request, self._config.server.trust_forwarded_for),
        )
        if not outcome.success:
            return failure_response(outcome.failure)
        return web.json_response(
            {"success": True, "referralCode": outcome.referral_code}, status=201,
        )

    async def profile(self, request: web.Request) -> web.Response:
        profile = await self._economy.registration.get_profile(request["uid"])
        if profile is None:
            return json_error(404, "Profile not found")
        return web.json_response(profile)

    # ══════════════════════════════════════════════════════════
    #  Security
    # ══════════════════════════════════════════════════════════

    async def attest(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        issues = body.get("detectedIssues") or []
        if not isinstance(issues, list):
            return json_error(400, "detectedIssues must be a list")
        fingerprint = body.get("deviceFingerprint")
        if not isinstance(fingerprint, dict):
            return json_error(400, "deviceFingerprint is required")
        app_version = body.get("appVersion")

        verdict = await self._economy.gate.attest(
            request["uid"],
            body.get("integrityToken"),
            fingerprint,
            app_version if isinstance(app_version, int) else None,
            [str(i) for i in issues],
            client_ip(request, self._config.server.trust_forwarded_for),
        )
        return web.json_response(verdict.to_dict(), status=403 if verdict.banned else 200)

    async def report(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        violations = body.get("violations") or []
        if not isinstance(violations, list):
            return json_error(400, "violations must be a list")
        evidence = body.get("evidence")
        outcome = await self._economy.gate.process_report(
            request["uid"],
            [str(v) for v in violations],
            evidence if isinstance(evidence, dict) else {},
            client_ip(request, self._config.server.trust_forwarded_for),
        )
        return web.json_response(outcome.to_dict(), status=403 if outcome.banned else 200)

    # ══════════════════════════════════════════════════════════
    #  Tasks & Spin
    # ══════════════════════════════════════════════════════════

    async def claim_task(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        task_type = body.get("taskType")
        if not task_type or not isinstance(task_type, str):
            return json_error(400, "taskType is required")
        outcome = await self._economy.tasks.claim(request["uid"], task_type)
        status = 200 if outcome.success else legacy_status(outcome.failure)
        return web.json_response(outcome.to_dict(), status=status)

    async def task_status(self, request: web.Request) -> web.Response:
        status = await self._economy.tasks.get_status(request["uid"])
        if status is None:
            return json_error(404, "User not found", "user_not_found")
        return web.json_response(status)

    async def spin(self, request: web.Request) -> web.Response:
        outcome = await self._economy.spin.spin(request["uid"])
        status = 200 if outcome.success else legacy_status(outcome.failure)
        return web.json_response(outcome.to_dict(), status=status)

    async def spin_history(self, request: web.Request) -> web.Response:
        limit = _int_param(request, "limit", 20)
        history = await self._economy.spin.history(request["uid"], limit)
        return web.json_response({"history": history})

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def request_withdrawal(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        outcome = await self._economy.withdrawals.request(
            request["uid"],
            body.get("method"),
            body.get("amount"),
            body.get("accountNumber"),
            body.get("accountName", ""),
        )
        if not outcome.success:
            return failure_response(outcome.failure)
        return web.json_response(outcome.to_dict())

    async def withdrawal_history(self, request: web.Request) -> web.Response:
        withdrawals = await self._economy.withdrawals.history(request["uid"])
        return web.json_response({"withdrawals": withdrawals})

    async def pending_withdrawals(self, request: web.Request) -> web.Response:
        withdrawals = await self._economy.withdrawals.list_pending()
        return web.json_response({"withdrawals": withdrawals})

    async def all_withdrawals(self, request: web.Request) -> web.Response:
        limit = _int_param(request, "limit", 50, maximum=500)
        withdrawals = await self._economy.withdrawals.list_all(request.query.get("status"), limit)
        return web.json_response({"withdrawals": withdrawals})

    async def approve_withdrawal(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        withdrawal_id = body.get("withdrawalId")
        if not withdrawal_id:
            return json_error(400, "withdrawalId is required")
        outcome = await self._economy.withdrawals.approve(str(withdrawal_id), request["uid"])
        if not outcome.success:
            return failure_response(outcome.failure)
        return web.json_response({"success": True})

    async def reject_withdrawal(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        withdrawal_id = body.get("withdrawalId")
        if not withdrawal_id:
            return json_error(400, "withdrawalId is required")
        reason = body.get("reason")
        outcome = await self._economy.withdrawals.reject(
            str(withdrawal_id), request["uid"], str(reason) if reason else None,
        )
        if not outcome.success:
            return failure_response(outcome.failure)
        return web.json_response({"success": True})

    # ══════════════════════════════════════════════════════════
    #  Admin
    # ══════════════════════════════════════════════════════════

    async def admin_ban(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        failure = await self._economy.admin.ban(
            str(body.get("targetUid") or ""),
            str(body.get("reason") or "admin_manual_ban"),
            request["uid"],
        )
        if failure is not None:
            return failure_response(failure)
        return web.json_response({"success": True})

    async def admin_unban(self, request: web.Request) -> web.Response:
        if request.get("admin_role") != "super_admin":
            return json_error(403, "Super admin access required")
        body = await _read_json(request)
        failure = await self._economy.admin.unban(str(body.get("targetUid") or ""), request["uid"])
        if failure is not None:
            return failure_response(failure)
        return web.json_response({"success": True})

    async def admin_search_users(self, request: web.Request) -> web.Response:
        query = request.query.get("query", "")
        if not query:
            return json_error(400, "query is required")
        users = await self._economy.admin.search_users(query, request.query.get("field", "uid"))
        if users is None:
            return json_error(400, "field must be one of uid, phone, referralCode")
        return web.json_response({"users": users})

    async def admin_user_detail(self, request: web.Request) -> web.Response:
        detail = await self._economy.admin.user_detail(request.match_info["uid"])
        if detail is None:
            return json_error(404, "User not found", "user_not_found")
        return web.json_response(detail)

    async def admin_fraud_logs(self, request: web.Request) -> web.Response:
        logs = await self._economy.admin.fraud_logs(_int_param(request, "limit", 50))
        return web.json_response({"logs": logs})

    async def admin_actions(self, request: web.Request) -> web.Response:
        actions = await self._economy.admin.action_logs(_int_param(request, "limit", 50))
        return web.json_response({"actions": actions})

    async def admin_dashboard(self, request: web.Request) -> web.Response:
        return web.json_response(await self._economy.admin.dashboard_kpis())

    # ══════════════════════════════════════════════════════════
    #  Health & Metrics
    # ══════════════════════════════════════════════════════════

    async def health(self, request: web.Request) -> web.Response:
        try:
            accounts = await self._economy.db.get_account_count()
            database = "connected"
        except Exception:
            self._logger.exception("Health check database query failed")
            accounts = None
            database = "error"
        return web.json_response(
            {
                "status": "ok" if database == "connected" else "degraded",
                "service": "economy",
                "database": database,
                "accounts": accounts,
            },
            status=200 if database == "connected" else 503,
        )

    async def metrics(self, request: web.Request) -> web.Response:
        lines = await collect_metrics(self._economy)
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")
