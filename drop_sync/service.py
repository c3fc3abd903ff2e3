"""
Headless service runner for Drop Sync.

Wires the scanner, dispatcher, worker pool and upload engine together and
runs them in the foreground until SIGINT/SIGTERM:

    python -m drop_sync start [-c CONFIG]    Run until Ctrl-C
    python -m drop_sync check [-c CONFIG]    Validate the configuration

Exit status: 0 on a clean stop, 1 when discovery halts on a broken watch
folder, 2 when the configuration is unusable.
"""

import logging
import logging.handlers
import signal
import sys
import time
from pathlib import Path

from drop_sync import __app_name__, __version__
from drop_sync.checkpoint import CheckpointStore
from drop_sync.config import Config
from drop_sync.dispatcher import Dispatcher, WorkerPool
from drop_sync.errors import ConfigurationError, LocalIOError
from drop_sync.store import ObjectStoreClient, QiniuClient
from drop_sync.tasks import TaskRegistry
from drop_sync.uploader import UploadEngine
from drop_sync.watcher import Watcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DISCOVERY_HALTED = 1
EXIT_BAD_CONFIG = 2


def setup_logging(cfg: Config) -> None:
    """Configure rotating file log and stderr handler."""
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    # Rotating file handler
    log_path = cfg.log_file
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=cfg.max_log_size_mb * 1024 * 1024,
            backupCount=cfg.log_backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Cannot open log file {log_path}: {exc}", file=sys.stderr)
    else:
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


class UploadService:
    """
    The assembled upload pipeline.

    watcher -> registry/dispatcher -> worker pool -> upload engine
    """

    def __init__(self, cfg: Config, client: ObjectStoreClient | None = None):
        self.config = cfg
        self.registry = TaskRegistry()
        self.dispatcher = Dispatcher(cfg.queue_size)
        self.checkpoints = CheckpointStore(cfg.progress_dir)
        self.client = client or QiniuClient(
            access_key=cfg.access_key,
            secret_key=cfg.secret_key,
            endpoint=cfg.endpoint,
            timeout=cfg.request_timeout,
        )
        self.engine = UploadEngine(
            client=self.client,
            checkpoints=self.checkpoints,
            registry=self.registry,
            bucket=cfg.bucket,
            block_size=cfg.block_size,
            key_prefix=cfg.key_prefix,
            retry_on_failure=cfg.retry_on_failure,
            retry_delay=cfg.retry_delay,
            prepared_time=cfg.prepared_time,
        )
        self.pool = WorkerPool(self.dispatcher, self.engine.upload, cfg.workers)
        self.watcher = Watcher(
            root_path=cfg.path,
            registry=self.registry,
            dispatcher=self.dispatcher,
            suffix=cfg.suffix,
            walk_interval=cfg.walk_interval,
            prepared_time=cfg.prepared_time,
            exclude_patterns=cfg.exclude_patterns,
            skip_dirs=[str(cfg.progress_dir)],
            watch_events=cfg.watch_events,
        )

    def start(self) -> None:
        """Start workers first, then discovery."""
        self.checkpoints.ensure_dir()
        self.pool.start()
        self.watcher.start()
        logger.info("Upload service initialized successfully.")

    def stop(self, timeout: float | None = None) -> None:
        """Stop discovery, then let workers finish their current upload."""
        self.watcher.stop()
        self.pool.stop(timeout=timeout)
        stats = self.engine.stats
        logger.info(
            "Stopped: %d uploaded, %d failed, %d bytes.",
            stats.total_uploaded, stats.total_failed, stats.total_bytes,
        )

    @property
    def is_running(self) -> bool:
        return self.watcher.is_running


def load_config(config_path: str | None) -> Config:
    """Load and validate the configuration, raising ConfigurationError."""
    cfg = Config(Path(config_path) if config_path else None)
    cfg.validate()
    return cfg


def _run_foreground(cfg: Config) -> int:
    """Run the pipeline until SIGINT/SIGTERM or until discovery halts."""
    service = UploadService(cfg)
    try:
        service.start()
    except (LocalIOError, FileNotFoundError) as exc:
        logger.error("Service cannot start: %s", exc)
        service.stop(timeout=1)
        return EXIT_BAD_CONFIG

    stop = False

    def _handler(sig, frame):
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    print(f"{__app_name__} running (press Ctrl-C to stop)…")
    while not stop and service.is_running:
        time.sleep(1)

    halted = service.watcher.error is not None
    service.stop(timeout=5)
    print(f"{__app_name__} stopped.")
    return EXIT_DISCOVERY_HALTED if halted else EXIT_OK


def _parse_args(argv: list[str]) -> tuple[str, str | None]:
    """Return (command, config path) from *argv* (without the program name)."""
    cmd = "start"
    config_path = None
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg in ("-c", "--config", "-f"):
            if not args:
                raise ValueError(f"{arg} needs a file path")
            config_path = args.pop(0)
        elif arg.startswith("--config="):
            config_path = arg.split("=", 1)[1]
        elif arg in ("start", "check", "help", "-h", "--help"):
            cmd = arg
        else:
            raise ValueError(f"unknown argument: {arg}")
    return cmd, config_path


def main(argv: list[str] | None = None) -> int:
    """Entry point for the command line."""
    try:
        cmd, config_path = _parse_args(sys.argv[1:] if argv is None else argv)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        _show_help()
        return EXIT_BAD_CONFIG

    if cmd in ("help", "-h", "--help"):
        _show_help()
        return EXIT_OK

    try:
        cfg = load_config(config_path)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_BAD_CONFIG

    if cmd == "check":
        print(f"Configuration OK: {cfg.file_path}")
        return EXIT_OK

    setup_logging(cfg)
    logger.info("%s %s starting.", __app_name__, __version__)
    return _run_foreground(cfg)


def _show_help() -> None:
    print(f"{__app_name__} {__version__}")
    print()
    print("Usage:")
    print("  python -m drop_sync start [-c CONFIG]   Run in foreground (Ctrl-C to stop)")
    print("  python -m drop_sync check [-c CONFIG]   Validate the configuration")


if __name__ == "__main__":
    sys.exit(main())
