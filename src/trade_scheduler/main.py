"""
Trade Scheduler - Main Entry Point

Runs the scheduled trade trigger engine and the exchange state
reconciler for LN Markets as one long-lived process.

Usage:
    python -m trade_scheduler.main                     # Run everything (default)
    python -m trade_scheduler.main --mode scheduler    # Market refresh + trigger scheduler
    python -m trade_scheduler.main --mode reconciler   # Reconciliation sweep only
    python -m trade_scheduler.main --once              # One pass of each, then exit
    python -m trade_scheduler.main --init-schema       # Create tables and exit

Configuration:
    The process reads configuration from:
    1. Environment variables (a .env file is loaded first if present)
    2. Command line arguments

Environment Variables:
    DATABASE_URL                     PostgreSQL connection string
    STORAGE_BACKEND                  "postgres" (default) or "memory"
    LNM_NETWORK                      "mainnet" (default) or "testnet"
    MARKET_SYMBOL                    Symbol of the cached ticker (default: BTC/USD)
    SCHEDULER_ENABLED                Run the trigger scheduler (default: true)
    SCHEDULER_POLL_INTERVAL_SECONDS  Scheduler poll interval (default: 30)
    SCHEDULER_MAX_CONCURRENCY        Instructions processed in parallel (default: 5)
    RECONCILE_ENABLED                Run the reconciliation sweep (default: true)
    RECONCILE_INTERVAL_SECONDS       Reconciliation interval (default: 300)
    MARKET_REFRESH_ENABLED           Refresh the market snapshot (default: true)
    MARKET_REFRESH_INTERVAL_SECONDS  Market snapshot interval (default: 15)
    LOG_LEVEL                        Logging level (DEBUG/INFO/WARNING/ERROR)
    PID_FILE                         Singleton lock file (default: /tmp/trade-scheduler.pid)
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Default PID file location
DEFAULT_PID_FILE = "/tmp/trade-scheduler.pid"

MODES = ("all", "scheduler", "reconciler")


class SingletonError(Exception):
    """Raised when another scheduler instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Context manager that ensures only one scheduler instance runs at a time.

    The trigger engine's at-most-once guarantee assumes a single process,
    so a second instance is refused rather than allowed to poll the same
    instructions.

    Raises:
        SingletonError: If another instance holds the lock
    """
    pid_path = Path(pid_file)

    # Read existing PID before opening (which would truncate)
    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so the file is not truncated before we hold the lock
    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        if existing_pid:
            raise SingletonError(
                f"Another scheduler instance is already running (PID: {existing_pid}). "
                f"Kill it with: kill {existing_pid}"
            )
        raise SingletonError(
            "Another scheduler instance is already running. "
            "Check for existing processes: ps aux | grep trade_scheduler"
        )

    # We have the lock - now truncate and write our PID
    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except (OSError, ValueError) as e:
            logger.debug(f"Singleton lock cleanup: {e}")

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def _env_bool(name: str, default: str = "true") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class AppConfig:
    """Complete process configuration."""

    # Storage
    database_url: str = ""
    storage_backend: str = "postgres"  # "postgres" or "memory"

    # Exchange
    network: str = "mainnet"
    market_symbol: str = "BTC/USD"

    # Scheduler
    scheduler_enabled: bool = True
    poll_interval_seconds: float = 30
    max_concurrency: int = 5

    # Reconciliation
    reconcile_enabled: bool = True
    reconcile_interval_seconds: float = 300

    # Market data
    market_refresh_enabled: bool = True
    market_refresh_interval_seconds: float = 15

    pid_file: str = DEFAULT_PID_FILE

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            storage_backend=os.environ.get("STORAGE_BACKEND", "postgres").lower(),
            network=os.environ.get("LNM_NETWORK", "mainnet").lower(),
            market_symbol=os.environ.get("MARKET_SYMBOL", "BTC/USD"),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED"),
            poll_interval_seconds=float(os.environ.get("SCHEDULER_POLL_INTERVAL_SECONDS", "30")),
            max_concurrency=int(os.environ.get("SCHEDULER_MAX_CONCURRENCY", "5")),
            reconcile_enabled=_env_bool("RECONCILE_ENABLED"),
            reconcile_interval_seconds=float(os.environ.get("RECONCILE_INTERVAL_SECONDS", "300")),
            market_refresh_enabled=_env_bool("MARKET_REFRESH_ENABLED"),
            market_refresh_interval_seconds=float(
                os.environ.get("MARKET_REFRESH_INTERVAL_SECONDS", "15")
            ),
            pid_file=os.environ.get("PID_FILE", DEFAULT_PID_FILE),
        )

    def validate(self) -> list[str]:
        """Configuration problems, empty if the config is usable."""
        problems = []
        if self.storage_backend not in ("postgres", "memory"):
            problems.append(f"STORAGE_BACKEND must be postgres or memory, got {self.storage_backend!r}")
        if self.storage_backend == "postgres" and not self.database_url:
            problems.append("DATABASE_URL environment variable is required")
        if self.network not in ("mainnet", "testnet"):
            problems.append(f"LNM_NETWORK must be mainnet or testnet, got {self.network!r}")
        if self.poll_interval_seconds <= 0:
            problems.append("SCHEDULER_POLL_INTERVAL_SECONDS must be positive")
        if self.max_concurrency < 1:
            problems.append("SCHEDULER_MAX_CONCURRENCY must be at least 1")
        if self.reconcile_interval_seconds <= 0:
            problems.append("RECONCILE_INTERVAL_SECONDS must be positive")
        if self.market_refresh_interval_seconds <= 0:
            problems.append("MARKET_REFRESH_INTERVAL_SECONDS must be positive")
        return problems


class TradeSchedulerApp:
    """
    Main process orchestrator.

    Manages the lifecycle of all components:
    - Storage (PostgreSQL pool or in-memory store)
    - Exchange gateway (per-user LN Markets clients)
    - Market snapshot provider
    - Trigger scheduler, trade executor and state reconciler
    - Background tasks
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Components (initialized on start)
        self._db = None
        self.repositories = None
        self.gateway = None
        self.snapshot_provider = None
        self.executor = None
        self.scheduler = None
        self.reconciler = None
        self.service = None
        self._background_tasks = None

    async def initialize(self) -> None:
        """Build every component without starting any loop."""
        await self._init_storage()
        self._init_components()

    async def start(self, mode: str = "all") -> None:
        """
        Start the process and block until shutdown.

        Args:
            mode: "all", "scheduler" or "reconciler"
        """
        logger.info("=" * 60)
        logger.info("TRADE SCHEDULER")
        logger.info("=" * 60)
        logger.info(f"Mode: {mode.upper()}")
        logger.info(f"Network: {self.config.network}")
        logger.info(f"Storage: {self.config.storage_backend}")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        # Setup signal handlers FIRST to catch early signals
        self._setup_signal_handlers()

        try:
            await self.initialize()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._init_background_tasks(mode)

            logger.info("=" * 60)
            logger.info("Trade scheduler started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._shutdown_event.wait()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def run_once(self, mode: str = "all") -> int:
        """One market refresh, scheduler pass and reconcile sweep. Returns an exit code."""
        self._running = True
        exit_code = 0
        try:
            await self.initialize()

            if mode in ("all", "scheduler"):
                if self.config.market_refresh_enabled:
                    try:
                        await self.snapshot_provider.refresh()
                    except Exception as e:
                        logger.warning(f"Market refresh failed: {e}")
                result = await self.scheduler.run_pass()
                logger.info(
                    f"Scheduler pass: pending={result.pending} triggered={result.triggered} "
                    f"failed={result.failed} errors={len(result.errors)}"
                )
                if result.errors:
                    exit_code = 1

            if mode in ("all", "reconciler"):
                results = await self.reconciler.reconcile_all_users()
                if any(not r.success for r in results):
                    exit_code = 1
        finally:
            await self.stop()
        return exit_code

    async def stop(self) -> None:
        """Stop the process gracefully."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        # Stop components in reverse order
        if self._background_tasks:
            try:
                await self._background_tasks.stop()
            except Exception as e:
                logger.warning(f"Error stopping background tasks: {e}")

        if self.gateway:
            try:
                await self.gateway.close()
            except Exception as e:
                logger.warning(f"Error closing exchange clients: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        logger.info("Shutdown complete")

    async def request_shutdown(self, reason: str = "manual") -> None:
        """Request a graceful shutdown."""
        if not self._running:
            return
        logger.warning(f"Shutdown requested: {reason}")
        self._shutdown_event.set()

    async def _init_storage(self) -> None:
        """Initialize the storage backend."""
        from trade_scheduler.storage import (
            Database,
            DatabaseConfig,
            memory_repositories,
            postgres_repositories,
        )

        if self.config.storage_backend == "memory":
            logger.warning("Storage: in-memory (state is lost on exit)")
            self.repositories = memory_repositories()
            return

        if not self.config.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        self._db = Database(DatabaseConfig(url=self.config.database_url))
        await self._db.initialize()

        # Verify connection
        if not await self._db.health_check():
            raise RuntimeError("Database health check failed")

        self.repositories = postgres_repositories(self._db)
        logger.info("Database: Connected")

    def _init_components(self) -> None:
        """Wire the exchange, provider, executor, scheduler and reconciler."""
        from trade_scheduler.core import SchedulerConfig, TradeSchedulerService, TriggerScheduler
        from trade_scheduler.exchange import ExchangeGateway
        from trade_scheduler.execution import StateReconciler, TradeExecutor
        from trade_scheduler.ingestion import MarketSnapshotProvider

        repos = self.repositories
        self.gateway = ExchangeGateway(repos.users, network=self.config.network)
        self.snapshot_provider = MarketSnapshotProvider(
            repos.market_data,
            network=self.config.network,
            symbol=self.config.market_symbol,
        )
        self.executor = TradeExecutor(self.gateway, repos.trades)
        self.scheduler = TriggerScheduler(
            repos.instructions,
            self.snapshot_provider,
            self.executor,
            config=SchedulerConfig(
                poll_interval_seconds=self.config.poll_interval_seconds,
                max_concurrency=self.config.max_concurrency,
            ),
        )
        self.reconciler = StateReconciler(
            self.gateway,
            repos.trades,
            repos.users,
            price_source=self.snapshot_provider.get_latest_price,
        )
        self.service = TradeSchedulerService(
            repos, self.scheduler, self.reconciler, self.snapshot_provider
        )

    async def _init_background_tasks(self, mode: str) -> None:
        """Start the periodic loops the mode asks for."""
        from trade_scheduler.core import BackgroundTaskConfig, BackgroundTasksManager

        run_scheduler = mode in ("all", "scheduler")
        run_reconciler = mode in ("all", "reconciler")

        config = BackgroundTaskConfig(
            market_refresh_interval_seconds=self.config.market_refresh_interval_seconds,
            # Balance sync also needs a price, so the reconciler keeps it fresh too
            market_refresh_enabled=self.config.market_refresh_enabled,
            scheduler_enabled=run_scheduler and self.config.scheduler_enabled,
            reconcile_interval_seconds=self.config.reconcile_interval_seconds,
            reconcile_enabled=run_reconciler and self.config.reconcile_enabled,
        )
        self._background_tasks = BackgroundTasksManager(
            snapshot_provider=self.snapshot_provider,
            scheduler=self.scheduler,
            reconciler=self.reconciler,
            config=config,
        )
        await self._background_tasks.start()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def configure_log_level(override: Optional[str] = None) -> None:
    """Apply --log-level if given, else LOG_LEVEL from the environment."""
    level = (override or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="LN Markets scheduled trade engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="all",
        help="Which services to run (default: all)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one scheduler pass and one reconcile sweep, then exit",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the database tables and exit",
    )
    return parser.parse_args(argv)


async def init_schema(config: AppConfig) -> int:
    """Apply schema.sql to DATABASE_URL."""
    from trade_scheduler.storage import Database, DatabaseConfig

    if not config.database_url:
        logger.error("DATABASE_URL environment variable is required")
        return 1

    db = Database(DatabaseConfig(url=config.database_url))
    await db.initialize()
    try:
        await db.apply_schema()
    finally:
        await db.close()
    logger.info("Schema applied")
    return 0


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    config = AppConfig.from_env()

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(problem)
        logger.error("See the module docstring for configuration")
        return 1

    if args.init_schema:
        return await init_schema(config)

    app = TradeSchedulerApp(config)

    try:
        if args.once:
            return await app.run_once(mode=args.mode)
        await app.start(mode=args.mode)
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    # Load .env file
    load_env_file()

    args = parse_args(argv)

    # LOG_LEVEL may have come from .env, which loads after import
    configure_log_level(args.log_level)

    if args.init_schema:
        return asyncio.run(main_async(args))

    # Ensure only one scheduler instance runs at a time
    pid_file = os.environ.get("PID_FILE", DEFAULT_PID_FILE)
    try:
        with singleton_lock(pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
