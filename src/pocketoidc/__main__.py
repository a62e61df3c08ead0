"""PocketOIDC entry point.

Changes:
  - 2026-10-14: Added ``generate-keys`` subcommand (writes keys/private.pem, mode 0600).
  - 2026-10-12: ``serve`` is the default command.
"""

import argparse
import logging
import os
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

from pydantic import ValidationError

from pocketoidc.config import get_config_dir, get_settings
from pocketoidc.logging_setup import setup_logging
from pocketoidc.oidc.errors import FatalConfigError
from pocketoidc.oidc.keys import generate_key_pair, load_signing_key

setup_logging(level="INFO")
logger = logging.getLogger(__name__)


def _package_version() -> str:
    try:
        return get_version("pocketoidc")
    except PackageNotFoundError:
        from pocketoidc import __version__

        return __version__


def generate_keys(out_dir: Path, force: bool = False) -> Path:
    """Write a fresh RSA signing key pair into *out_dir*. Returns the private key path."""
    private_path = out_dir / "private.pem"
    public_path = out_dir / "public.pem"
    if private_path.exists() and not force:
        raise FileExistsError(f"{private_path} already exists (use --force to overwrite)")

    out_dir.mkdir(parents=True, exist_ok=True)
    private_pem, public_pem = generate_key_pair()

    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as f:
        f.write(private_pem)
    os.chmod(private_path, 0o600)
    public_path.write_text(public_pem, encoding="ascii")

    logger.info("Wrote signing key %s to %s", load_signing_key(private_pem).kid, private_path)
    return private_path


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="PocketOIDC - self-hosted OpenID Connect Provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pocketoidc                          Start the provider (default)
  pocketoidc serve --port 3000        Start the provider on a given port
  pocketoidc generate-keys            Create keys/private.pem in the config dir
  pocketoidc serve --dev              Start with auto-reload (dev mode)
""",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "generate-keys"],
        help="Subcommand (default: serve)",
    )
    parser.add_argument(
        "--host", type=str, default=None, help="Host to bind (default: settings.web_host)"
    )
    parser.add_argument(
        "--port", "-p", type=int, default=None, help="Port to bind (default: settings.web_port)"
    )
    parser.add_argument("--dev", action="store_true", help="Development mode with auto-reload")
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="generate-keys: output directory (default: <config dir>/keys)",
    )
    parser.add_argument(
        "--force", action="store_true", help="generate-keys: overwrite an existing key"
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"%(prog)s {_package_version()}"
    )

    args = parser.parse_args()

    if args.command == "generate-keys":
        try:
            generate_keys(args.out or get_config_dir() / "keys", force=args.force)
        except OSError as e:
            logger.error("%s", e)
            sys.exit(1)
        return

    try:
        settings = get_settings()
        setup_logging(level=settings.log_level)

        from pocketoidc.api.app import run_server
        from pocketoidc.oidc.provider import get_provider

        # Build eagerly so configuration errors surface before binding the port
        get_provider()
        run_server(
            host=args.host or settings.web_host,
            port=args.port or settings.web_port,
            dev=args.dev,
        )
    except (FatalConfigError, ValidationError) as e:
        logger.error("Configuration error: %s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("👋 PocketOIDC stopped.")


if __name__ == "__main__":
    main()
