"""CLI for the file-share gate.

Commands:
- serve: run the gated listener(s) in the foreground
- cert: ensure TLS material and print its details
- classify: show how origin addresses are classified
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import load_config
from gate.httpd import Server, domain_policy
from gate.network import classify
from gate.tls import CertificateGenerationError, CertificateManager

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_common_args(parser: argparse.ArgumentParser):
    """Add arguments shared between serve and cert."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file (YAML or UCI; default: $FILEGATE_CONFIG or /etc/config/fileshare)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def _handle_serve(argv):
    """Handle 'serve': run the server in the foreground."""
    parser = argparse.ArgumentParser(
        prog="filegate serve",
        description="Run the gated file-share listener",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    server = Server(config=load_config(args.config))
    try:
        server.start()
    except (RuntimeError, OSError) as e:
        logger.error("Failed to start server: %s", e)
        return 1

    print(f"\nServer running at {server.scheme}://{server.config.bind}:{server.port}")
    if server.material:
        print(f"Certificate fingerprint: {server.material.fingerprint}")
    print("\nPress Ctrl+C to stop...")

    server.serve_forever()
    return 0


def _handle_cert(argv):
    """Handle 'cert': ensure certificate material exists and describe it."""
    parser = argparse.ArgumentParser(
        prog="filegate cert",
        description="Ensure the TLS certificate matches the configured domain",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--cert-dir",
        type=Path,
        help="Certificate directory (overrides cert_dir from config)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = load_config(args.config)
    manager = CertificateManager(args.cert_dir or config.cert_dir, domain_policy(config))
    try:
        material = manager.ensure()
    except CertificateGenerationError as e:
        logger.error("%s", e)
        return 1

    try:
        record = manager.load_record()
    except (OSError, ValueError):
        record = None
    info = {
        "domain": material.domain,
        "certificate": str(material.cert_path),
        "key": str(material.key_path),
        "fingerprint": material.fingerprint,
        "generatedAt": record.to_dict()["generatedAt"] if record else None,
    }
    if args.json:
        print(json.dumps(info, indent=2))
    else:
        print(f"Domain:      {info['domain']}")
        print(f"Certificate: {info['certificate']}")
        print(f"Key:         {info['key']}")
        print(f"Fingerprint: {info['fingerprint']}")
        print(f"Generated:   {info['generatedAt'] or 'unknown'}")
    return 0


def _handle_classify(argv):
    """Handle 'classify': print the origin class of each address."""
    parser = argparse.ArgumentParser(
        prog="filegate classify",
        description="Classify origin addresses as private or external",
    )
    parser.add_argument("addresses", nargs="+", help="Addresses to classify")
    args = parser.parse_args(argv)

    for address in args.addresses:
        print(f"{address or '(empty)'}: {classify(address).value}")
    return 0


def main(argv=None):
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "serve": _handle_serve,
        "cert": _handle_cert,
        "classify": _handle_classify,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: filegate <command> [options]")
        print()
        print("Commands:")
        print("  serve      Run the gated file-share listener")
        print("  cert       Ensure the TLS certificate and show its details")
        print("  classify   Classify origin addresses")
        print()
        print("Run 'filegate <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
