"""Service orchestrator: EconomyApp.

config → DB init → seed admins/root accounts → collaborator sessions →
commission worker → HTTP site → run until stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time

from aiohttp import web

from . import __version__
from .admin_service import ADMIN_ROLES, AdminService
from .api import EconomyApi
from .attestation_gate import AttestationGate
from .commission_queue import CommissionQueue
from .config import EconomyConfig, load_config
from .database import LedgerStore
from .rate_limiter import RouteRateLimiter
from .referral_engine import ReferralEngine
from .registration import Registration
from .spin_engine import SpinEngine
from .task_engine import TaskEngine
from .utils import now_ms
from .verifiers import IdentityClient, IntegrityClient, IpReputationClient
from .withdrawal_engine import WithdrawalEngine


class EconomyApp:
    """Top-level application orchestrator.

    Collaborator clients can be injected (tests pass AsyncMocks); otherwise
    HTTP clients are built from config.
    """

    _MAINTENANCE_INTERVAL = 300  # seconds

    def __init__(
        self,
        config: EconomyConfig,
        identity: IdentityClient | None = None,
        integrity: IntegrityClient | None = None,
        ip_reputation: IpReputationClient | None = None,
    ) -> None:
        self.config = config
        self.logger = logging.getLogger("economy")

        self.db = LedgerStore(config.database.path, self.logger)

        self.identity = identity or IdentityClient(
            config.identity, logging.getLogger("economy.identity"),
        )
        self.integrity = integrity or IntegrityClient(
            config.integrity, logging.getLogger("economy.integrity"),
        )
        self.ip_reputation = ip_reputation or IpReputationClient(
            config.ip_reputation, logging.getLogger("economy.ip_reputation"),
        )
        # Sessions we opened ourselves; injected clients are the caller's
        self._owned_clients = [
            client
            for client, injected in (
                (self.identity, identity),
                (self.integrity, integrity),
                (self.ip_reputation, ip_reputation),
            )
            if injected is None
        ]

        self.referrals = ReferralEngine(
            config.referrals, self.db, logging.getLogger("economy.referrals"),
        )
        self.commissions = CommissionQueue(
            config.commissions, self.db, self.referrals, logging.getLogger("economy.commissions"),
        )
        self.gate = AttestationGate(
            config.security,
            self.db,
            self.identity,
            self.integrity,
            self.ip_reputation,
            logging.getLogger("economy.security"),
        )
        self.tasks = TaskEngine(
            config.tasks, self.db, logging.getLogger("economy.tasks"),
        )
        self.spin = SpinEngine(
            config.tasks, config.spin, self.db, logging.getLogger("economy.spin"),
        )
        self.registration = Registration(
            self.db, self.referrals, logging.getLogger("economy.referrals"),
        )
        self.withdrawals = WithdrawalEngine(
            config.withdrawals, self.db, logging.getLogger("economy.withdrawals"),
        )
        self.admin = AdminService(self.db, self.gate, logging.getLogger("economy.admin"))

        self.rate_limiter = RouteRateLimiter(
            {
                "general": config.rate_limits.general,
                "auth": config.rate_limits.auth,
                "tasks": config.rate_limits.tasks,
                "security": config.rate_limits.security,
            },
            window_seconds=config.rate_limits.window_seconds,
        )
        self.api = EconomyApi(self, logging.getLogger("economy.api"))

        # State
        self._running = False
        self._start_time: float | None = None
        self._runner: web.AppRunner | None = None
        self._maintenance_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()

        # Counters (for metrics)
        self.requests_total: int = 0

    @classmethod
    def from_config_path(cls, config_path: str) -> EconomyApp:
        return cls(load_config(config_path))

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ══════════════════════════════════════════════════════════
    #  Setup
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create tables and seed configured admins and root accounts."""
        await self.db.initialize()

        for uid, role in self.config.admins.items():
            if role not in ADMIN_ROLES:
                self.logger.warning("Ignoring admin %s with unknown role %r", uid, role)
                continue
            await self.db.set_admin(uid, role)

        for root in self.config.root_accounts:
            await self.db.create_root_account(
                root.uid, root.phone, root.referral_code.upper(), now_ms(),
            )
        if self.config.root_accounts:
            self.logger.info("Seeded %d root account(s)", len(self.config.root_accounts))

    def build_web_app(self) -> web.Application:
        return self.api.build_app()

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        self.logger.info("Starting reward-economy...")
        self._start_time = time.time()

        await self.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        for client in self._owned_clients:
            await client.start()

        await self.commissions.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        self._runner = web.AppRunner(self.build_web_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.server.host, self.config.server.port)
        await site.start()

        self._running = True
        self.logger.info(
            "reward-economy started (v%s) on %s:%d",
            __version__, self.config.server.host, self.config.server.port,
        )

    async def run(self) -> None:
        """Start and block until stop() is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            self._stopped.set()
            return
        self.logger.info("Shutting down reward-economy...")
        self._running = False

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._maintenance_task:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        await self.commissions.stop()
        try:
            handled = await self.commissions.drain()
            if handled:
                self.logger.info("Delivered %d commission job(s) on shutdown", handled)
        except Exception:
            self.logger.exception("Final commission drain failed")

        for client in reversed(self._owned_clients):
            await client.stop()

        self.logger.info("reward-economy stopped.")
        self._stopped.set()

    async def _maintenance_loop(self) -> None:
        """Periodically prune idle rate-limit windows."""
        while True:
            await asyncio.sleep(self._MAINTENANCE_INTERVAL)
            try:
                self.rate_limiter.cleanup()
            except Exception:
                self.logger.exception("Rate limiter cleanup failed")
