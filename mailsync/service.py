"""MailSyncService: wires up the stores and runs sync passes on an interval."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
import uvicorn

from .config import MailSyncConfig
from .health import create_health_app
from .logging import setup_logging
from .models import Account, ImapServer, ServiceStatus, SyncReport
from .orchestrator import SessionFactory, SyncOrchestrator
from .registry import AccountRegistry
from .secret_store import KeyringSecretStore, SecretStore
from .shutdown import install_signal_handlers, remove_signal_handlers
from .store import MailStoreRegistry
from .vault import CredentialVault

logger = structlog.get_logger()


class MailSyncService:
    """Long-running sync process.

    In service mode the periodic sync loop and the uvicorn-hosted health
    app share one task group; the shutdown event stops both.

    :meth:`run_once` and :meth:`add_account` serve one-shot CLI use.
    """

    name = "mailsync"

    def __init__(
        self,
        config: MailSyncConfig,
        *,
        secret_store: SecretStore | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self.registry = AccountRegistry(config.storage)
        self.stores = MailStoreRegistry(config.storage)
        self.vault = CredentialVault(config.vault, secret_store or KeyringSecretStore())
        self.orchestrator = SyncOrchestrator(
            config,
            registry=self.registry,
            stores=self.stores,
            vault=self.vault,
            session_factory=session_factory,
        )
        self._shutdown_event = asyncio.Event()
        self._last_reports: dict[str, SyncReport] = {}
        self._passes = 0
        self._last_pass_at: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.registry.init()

    async def stop(self) -> None:
        await self.orchestrator.close()
        await self.registry.close()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def add_account(self, user: str, password: str, imap: ImapServer) -> Account:
        return await self.orchestrator.add_account(user, password, imap)

    async def run_once(self, users: Iterable[str] | None = None) -> list[SyncReport]:
        """Run one pass over *users* (default: every registered account)."""
        reports = await self.orchestrator.sync_all(users)
        for report in reports:
            self._last_reports[report.account] = report
        self._passes += 1
        self._last_pass_at = datetime.now(UTC)
        failed = [r.account for r in reports if not r.ok]
        self.status = ServiceStatus.DEGRADED if failed else ServiceStatus.RUNNING
        logger.info("sync_pass_complete", accounts=len(reports), failed=failed)
        return reports

    async def health_check(self) -> dict[str, Any]:
        return {
            "passes": self._passes,
            "last_pass_at": self._last_pass_at.isoformat() if self._last_pass_at else None,
            "accounts": {
                user: {
                    "ok": report.ok,
                    "error": report.error,
                    "default_folder": report.default_folder,
                    "failed_folders": report.failed_folders,
                    "threads": report.threads,
                }
                for user, report in self._last_reports.items()
            },
        }

    # ------------------------------------------------------------------
    # Sync loop
    # ------------------------------------------------------------------

    async def _run_sync_loop(self) -> None:
        interval = self.config.sync.poll_interval_seconds
        logger.info("sync_loop_started", interval=interval)
        self.status = ServiceStatus.RUNNING
        try:
            while not self._shutdown_event.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                except TimeoutError:
                    continue
        except Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("sync_loop_error")
            raise
        finally:
            logger.info("sync_loop_stopped", passes=self._passes)

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.sync.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Sync every account each poll interval until a shutdown signal arrives."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info("service_starting", data_dir=str(self.config.storage.data_dir))
        await self.start()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_sync_loop())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("service_task_group_error")
        finally:
            self.status = ServiceStatus.STOPPING
            remove_signal_handlers()
            await self.stop()
            self.status = ServiceStatus.STOPPED
            logger.info("service_stopped")
