"""
certkeeper command-line entry point.

Usage::

    certkeeper                                  # default config path
    certkeeper -cfg /etc/certkeeper/config.toml
    certkeeper --config config.toml --once      # single attempt, then exit
    python -m certkeeper -cfg config.toml

Configuration and logger failures exit immediately with status 1. After
that, renewal failures are only logged; the process keeps running until it
receives SIGINT or SIGTERM.
"""
import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from . import __version__
from .acme_client import ACMEClient
from .dns_providers import get_dns_provider
from .errors import ConfigError
from .log import configure_logging
from .loop import LifecycleLoop
from .renewal import RenewalOrchestrator
from .settings import DEFAULT_CONFIG_FILE, CertKeeperSettings, load_settings
from .storage import CertificateSink, MetadataStore


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certkeeper",
        description="Keep one domain's TLS certificate renewed via ACME DNS-01.",
    )
    parser.add_argument(
        "-cfg",
        "--config",
        default=str(DEFAULT_CONFIG_FILE),
        metavar="PATH",
        help=f"Path to the TOML configuration file (default: {DEFAULT_CONFIG_FILE}).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single renewal attempt and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def build_orchestrator(settings: CertKeeperSettings) -> RenewalOrchestrator:
    """Wire the renewal orchestrator from settings."""
    dns_provider = get_dns_provider(
        "cloudflare",
        api_token=settings.account.token.get_secret_value(),
        zone_id=settings.renewal.dns_zone_id,
    )
    authority = ACMEClient(
        email=settings.account.email,
        dns_provider=dns_provider,
        staging=settings.account.staging,
        account_key_path=Path(settings.account.key_path) if settings.account.key_path else None,
        key_type=settings.renewal.key_type,
        propagation_delay=settings.renewal.propagation_delay,
        dns_resolvers=settings.renewal.dns_resolvers,
    )
    return RenewalOrchestrator(
        domain=settings.domain.name,
        store=MetadataStore(Path(settings.path.json_path)),
        sink=CertificateSink(
            cert_path=Path(settings.path.cert),
            key_path=Path(settings.path.key),
            issuer_path=Path(settings.path.cacert),
        ),
        authority=authority,
        lead=timedelta(days=settings.renewal.lead_days),
    )


async def serve(
    settings: CertKeeperSettings,
    once: bool = False,
    stop_requested: Optional[asyncio.Event] = None,
) -> int:
    """
    Run the startup check, then the periodic loop until a stop signal.

    Args:
        settings: Loaded configuration
        once: Exit after the startup check
        stop_requested: Event that ends the loop (set by SIGINT/SIGTERM)

    Returns:
        Process exit code
    """
    lifecycle = LifecycleLoop(
        build_orchestrator(settings),
        check_interval=settings.renewal.check_interval,
    )

    # Startup check completes before the periodic loop is scheduled
    outcome = await lifecycle.run_once()
    if once:
        return 0 if outcome is not None else 1

    if stop_requested is None:
        stop_requested = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        event_loop.add_signal_handler(sig, stop_requested.set)

    try:
        lifecycle.start(immediate=False)
        await stop_requested.wait()
        logger.info("[CERT-MAIN] Stop requested, shutting down")
    finally:
        for sig in signals:
            event_loop.remove_signal_handler(sig)
        await lifecycle.stop()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(Path(args.config))
    except ConfigError as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    try:
        configure_logging(settings.log)
    except ConfigError as e:
        print(f"Failed to initialize logger: {e}", file=sys.stderr)
        return 1

    logger.info("[CERT-MAIN] Managing certificate for %s", settings.domain.name)
    return asyncio.run(serve(settings, once=args.once))


def cli() -> None:
    sys.exit(main())
