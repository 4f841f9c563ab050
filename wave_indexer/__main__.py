"""CLI entry point for wave-indexer."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .config import load_config
from .main import IndexerApp

CONFIG_SEARCH_PATHS = (Path("config.yaml"), Path("/etc/wave-indexer/config.yaml"))


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wave-indexer",
        description="Index duel and pool contract events and stream them to websocket subscribers",
    )
    parser.add_argument("--config", type=str, help="Path to config.yaml (default: search CWD, then /etc)")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    found = next((p for p in CONFIG_SEARCH_PATHS if p.exists()), None)
    return str(found) if found else None


def validate_config(config_path: str, logger: logging.Logger) -> int:
    """Exit status for ``--validate-config``."""
    try:
        cfg = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Config validation failed: %s", e)
        return 1
    logger.info(
        "Config %s is valid (challenge %s, pool %s)",
        config_path, cfg.contracts.challenge.address, cfg.contracts.pool.address,
    )
    return 0


async def serve(config_path: str, logger: logging.Logger) -> int:
    """Run the indexer until SIGINT/SIGTERM; returns the exit status."""
    app = IndexerApp(config_path)

    # Unix only; Windows relies on KeyboardInterrupt
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.run()
    except (FileNotFoundError, ValueError) as e:
        logger.error("Startup failed: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()
    return 0


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("wave")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config:
        status = validate_config(config_path, logger)
    else:
        status = await serve(config_path, logger)
    if status:
        sys.exit(status)


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
