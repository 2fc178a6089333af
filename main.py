"""
ACME gateway certificate rotator - CLI entry point.

Usage:
  python main.py --once                        # Rotate the certificate now
  python main.py --schedule                    # Rotate daily at SCHEDULE_TIME
  python main.py --once --domains a.com b.com  # Override MANAGED_DOMAINS for this run
  python main.py --once --slot wildcard-cert   # Override CERT_SLOT_NAME for this run
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Rotation runner ───────────────────────────────────────────────────────────


def run_once(domains: list[str] | None = None, slot_name: str | None = None) -> dict:
    """Rotate one certificate into the configured gateway and return the final state."""
    from config import settings
    from rotation.graph import make_orchestrator

    effective_domains = domains or settings.MANAGED_DOMAINS
    if not effective_domains:
        log.error("No domains configured. Set MANAGED_DOMAINS in .env or pass --domains.")
        sys.exit(1)

    slot = slot_name or settings.CERT_SLOT_NAME
    if not slot or not settings.AZURE_APPGW_NAME:
        log.error("CERT_SLOT_NAME and AZURE_APPGW_NAME must be set (or pass --slot).")
        sys.exit(1)

    orchestrator = make_orchestrator()
    return orchestrator.run(
        effective_domains,
        gateway_ref=settings.gateway_ref,
        slot_name=slot,
        contact_email=settings.CONTACT_EMAIL,
    )


def run_scheduled(domains: list[str] | None = None, slot_name: str | None = None) -> None:
    """Run the rotation on a recurring daily schedule."""
    import time

    import schedule

    from acmev2.errors import RenewalError
    from config import settings

    schedule_time = settings.SCHEDULE_TIME
    log.info("Scheduling daily certificate rotation at %s (local time)", schedule_time)

    def job() -> None:
        log.info("Scheduled run triggered")
        try:
            run_once(domains=domains, slot_name=slot_name)
        except RenewalError as exc:
            log.error("Scheduled rotation failed (%s): %s", type(exc).__name__, exc)
        except Exception as exc:
            log.exception("Scheduled rotation crashed: %s", exc)

    schedule.every().day.at(schedule_time).do(job)

    log.info("Running initial rotation immediately...")
    job()

    log.info("Entering schedule loop - press Ctrl+C to stop")
    while True:
        schedule.run_pending()
        time.sleep(60)


# ── CLI ───────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Renew an ACME certificate and install it on an application gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --schedule
  python main.py --once --domains www.example.com api.example.com
  python main.py --once --slot wildcard-cert
        """,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one rotation immediately and exit",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run on the configured daily schedule (SCHEDULE_TIME in .env)",
    )
    parser.add_argument(
        "--domains",
        nargs="+",
        metavar="DOMAIN",
        help="Override MANAGED_DOMAINS; the first domain becomes the certificate CN",
    )
    parser.add_argument(
        "--slot",
        metavar="NAME",
        help="Override CERT_SLOT_NAME (gateway certificate slot to replace)",
    )

    args = parser.parse_args(argv)

    if not args.once and not args.schedule:
        parser.print_help()
        sys.exit(1)

    if args.schedule:
        run_scheduled(domains=args.domains, slot_name=args.slot)
        return

    from acmev2.errors import RenewalError

    try:
        run_once(domains=args.domains, slot_name=args.slot)
    except RenewalError as exc:
        log.error("Rotation failed (%s): %s", type(exc).__name__, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
