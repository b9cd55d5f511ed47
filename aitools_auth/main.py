"""
aitools-auth - Main Entry Point

Operator tool for the two-factor subsystem: create secrets, show the
current code for a secret, check a code, and generate backup codes.

Exit status: 0 success, 1 code rejected, 2 invalid input.
"""

import logging
import sys
import time
from typing import NoReturn, Optional

import click
from rich.console import Console

from .auth import totp
from .auth.backup_codes import generate_backup_codes
from .errors import InvalidEncoding, SecretGenerationFailure
from .settings import Settings


EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_INVALID = 2

console = Console(highlight=False)


def _invalid(message: str) -> NoReturn:
    click.echo(f"error: {message}", err=True)
    sys.exit(EXIT_INVALID)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Two-factor authentication tools (TOTP, RFC 6238)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = Settings()


@main.command("secret")
@click.option("--label", required=True, help="Account label, usually the email address.")
@click.option("--qr", is_flag=True, help="Print a QR code for scanning.")
@click.pass_obj
def cmd_secret(settings: Settings, label: str, qr: bool) -> None:
    """Generate a new shared secret and provisioning URI."""
    try:
        setup = totp.generate_setup(label, settings.issuer)
    except SecretGenerationFailure as e:
        _invalid(str(e))

    console.print(f"[bold]Secret:[/bold]  {' '.join(setup.display_groups)}", soft_wrap=True)
    console.print(f"[bold]URI:[/bold]     {setup.provisioning_uri}", soft_wrap=True)
    if qr:
        click.echo(totp.qr_ascii(setup.provisioning_uri))


@main.command("code")
@click.argument("secret")
@click.option("--at", type=click.FloatRange(min=0), help="Unix timestamp instead of now.")
def cmd_code(secret: str, at: Optional[float]) -> None:
    """Print the current code for SECRET."""
    timestamp = at if at is not None else time.time()
    try:
        value = totp.totp(secret, timestamp)
    except InvalidEncoding as e:
        _invalid(f"invalid secret: {e}")
    except ValueError as e:
        _invalid(str(e))

    click.echo(value)
    click.echo(f"Valid for {totp.get_remaining_seconds(timestamp)} more seconds", err=True)


@main.command("verify")
@click.argument("secret")
@click.argument("candidate", metavar="CODE")
@click.option("--at", type=click.FloatRange(min=0), help="Unix timestamp instead of now.")
@click.option("--tolerance", type=click.IntRange(0, 10), help="Accepted drift in steps.")
@click.pass_obj
def cmd_verify(settings: Settings, secret: str, candidate: str,
               at: Optional[float], tolerance: Optional[int]) -> None:
    """Check CODE against SECRET."""
    if tolerance is None:
        tolerance = settings.tolerance_steps
    try:
        ok = totp.verify(candidate, secret, tolerance, timestamp=at)
    except InvalidEncoding as e:
        _invalid(f"invalid secret: {e}")
    except ValueError as e:
        _invalid(str(e))

    click.echo("valid" if ok else "invalid")
    sys.exit(EXIT_OK if ok else EXIT_REJECTED)


@main.command("backup-codes")
@click.option("--count", type=click.IntRange(min=1), help="Number of codes.")
@click.pass_obj
def cmd_backup_codes(settings: Settings, count: Optional[int]) -> None:
    """Generate a set of backup codes."""
    if count is None:
        count = settings.backup_code_count
    try:
        codes = generate_backup_codes(count, settings.backup_code_length)
    except SecretGenerationFailure as e:
        _invalid(str(e))

    for value in codes:
        click.echo(value)


if __name__ == "__main__":
    main()
