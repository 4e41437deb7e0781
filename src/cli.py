#!/usr/bin/env python3
"""CLI entry point for ming-mong.

Nouns:
- serve: Run the ping server in the foreground
- signature: Print the current ping signature
- port: Inspect or reclaim a TCP port (show/reclaim)
"""

import argparse
import json
import logging
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from config import ConfigError, TLSMode, load_config
from provision import (
    CertificateError,
    CertificateProvisioner,
    PortReclaimer,
    ProvisioningError,
)
from server.httpd import Server
from server.signature import derive_signature

logger = logging.getLogger(__name__)

NOUN_COMMANDS = {
    "serve": "Run the ping server in the foreground",
    "signature": "Print the current ping signature",
    "port": "Inspect or reclaim a TCP port (show/reclaim)",
}


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _build_serve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ming-mong serve",
        description="Run the stealth ping server in the foreground",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Port to listen on (default: 8080, or 8443 with --tls self-signed/auto)",
    )
    parser.add_argument(
        "--bind", "-b",
        help="Address to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML config file",
    )

    # TLS options
    parser.add_argument(
        "--tls",
        choices=[m.value for m in TLSMode if m != TLSMode.PROVIDED],
        help="TLS mode (default: from environment, else none)",
    )
    parser.add_argument(
        "--domain",
        help="Domain for --tls auto (default: wildcard DNS name from public IP)",
    )
    parser.add_argument(
        "--email",
        help="ACME account email for --tls auto",
    )
    parser.add_argument(
        "--staging",
        action="store_true",
        default=None,
        help="Use the ACME staging environment",
    )
    parser.add_argument(
        "--acme-timeout",
        type=float,
        help="Timeout in seconds for certificate issuance",
    )
    parser.add_argument(
        "--cert",
        type=Path,
        help="Path to TLS certificate (requires --key)",
    )
    parser.add_argument(
        "--key",
        type=Path,
        help="Path to TLS private key",
    )
    parser.add_argument(
        "--cert-dir",
        type=Path,
        help="Directory for generated or issued certificates (default: temporary)",
    )
    parser.add_argument(
        "--optional-tls",
        action="store_true",
        help="Serve plain HTTP if no certificate can be provisioned",
    )

    parser.add_argument(
        "--reclaim",
        action="store_true",
        default=None,
        help="Terminate whatever already listens on the port before starting",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def serve_main(argv: list) -> int:
    """Handle 'serve': reclaim port, provision TLS, serve forever."""
    parser = _build_serve_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.cert and not args.key:
        logger.error("--key is required when --cert is provided")
        return 1

    tls_mode = TLSMode.parse(args.tls) if args.tls else None
    if args.cert:
        tls_mode = TLSMode.PROVIDED

    try:
        config = load_config(config_file=args.config).with_overrides(
            bind=args.bind,
            port=args.port,
            tls_mode=tls_mode,
            cert_file=args.cert,
            key_file=args.key,
            cert_dir=args.cert_dir,
            domain=args.domain,
            acme_email=args.email,
            acme_timeout=args.acme_timeout,
            acme_staging=args.staging,
            tls_required=False if args.optional_tls else None,
            reclaim_port=args.reclaim,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    reclaimer = PortReclaimer()
    if config.reclaim_port:
        try:
            reclaimer.ensure_free(config.listen_port)
        except ProvisioningError as e:
            logger.error("Cannot free port %d: %s", config.listen_port, e.message)
            return 1

    try:
        bundle = CertificateProvisioner(config, reclaimer=reclaimer).run()
    except CertificateError as e:
        logger.error("%s", e.message)
        return 1

    server = Server(config=config, bundle=bundle)
    try:
        server.start()
    except RuntimeError as e:
        logger.error("Failed to start server: %s", e)
        return 1

    server.serve_forever()
    return 0


def signature_main(argv: list) -> int:
    """Handle 'signature': print the token callers must present."""
    parser = argparse.ArgumentParser(
        prog="ming-mong signature",
        description="Print the ping signature for a UTC date",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        help="UTC date (YYYY-MM-DD, default: today)",
    )
    parser.add_argument(
        "--yesterday",
        action="store_true",
        help="Print yesterday's signature (still accepted)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    args = parser.parse_args(argv)

    day = args.date or datetime.now(timezone.utc).date()
    if args.yesterday:
        day -= timedelta(days=1)
    token = derive_signature(day)

    if args.json:
        print(json.dumps({"date": day.isoformat(), "signature": token}))
    else:
        print(token)
    return 0


def port_main(argv: list) -> int:
    """Handle 'port show|reclaim PORT'."""
    parser = argparse.ArgumentParser(
        prog="ming-mong port",
        description="Inspect or reclaim a TCP port",
    )
    parser.add_argument("action", choices=["show", "reclaim"])
    parser.add_argument("port", type=int)
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    reclaimer = PortReclaimer()
    try:
        if args.action == "show":
            occupants = reclaimer.occupants(args.port)
            if not occupants:
                print(f"Port {args.port}: free")
            for occupant in occupants:
                print(f"Port {args.port}: {occupant}")
            return 0

        result = reclaimer.reclaim(args.port)
    except ProvisioningError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if result.success:
        print(f"Port {args.port}: free")
        return 0
    remaining = ", ".join(str(o) for o in result.remaining)
    print(f"Error: port {args.port} still in use by {remaining}", file=sys.stderr)
    return 1


COMMANDS = {
    "serve": serve_main,
    "signature": signature_main,
    "port": port_main,
}


def main(argv=None) -> int:
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: ming-mong <command> [options]")
        print()
        print("Commands:")
        for noun, description in NOUN_COMMANDS.items():
            print(f"  {noun:<10} {description}")
        print()
        print("Run 'ming-mong <command> --help' for command-specific options.")
        return 0

    noun = argv[0]
    if noun not in COMMANDS:
        print(f"Error: Unknown command '{noun}'")
        print(f"Available commands: {', '.join(COMMANDS)}")
        return 1

    return COMMANDS[noun](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
