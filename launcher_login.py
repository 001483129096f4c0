#!/usr/bin/env python3
"""
Nix Client Launcher: Account Login
==================================
Signs a Microsoft account into Minecraft: Java Edition and keeps the
credentials in the launcher's config directory.

Usage:
  nix-login login              # Device code flow (enter a code at microsoft.com/link)
  nix-login login --browser    # Browser redirect flow on localhost:53682
  nix-login refresh            # Refresh stored tokens
  nix-login status             # Show the stored account
  nix-login ensure             # Start-up check: refresh if expired, else ask for login
"""

import logging
import sys
import threading
import webbrowser
from datetime import datetime, timezone

import click

import launcher_auth
from auth_errors import AuthError, ChainStageError, LoginCancelled


def _banner(title):
    click.echo("=" * 56)
    click.echo(f"  {title}")
    click.echo("=" * 56)
    click.echo()


def _fail(err):
    """Print a login error the way the shell's error dialog would, and exit."""
    if isinstance(err, ChainStageError) and err.ownership_denied:
        click.echo("[!] This Microsoft account does not own Minecraft: Java Edition.", err=True)
    elif isinstance(err, ChainStageError) and isinstance(err.cause, LoginCancelled):
        click.echo(f"[!] Login cancelled: {err.cause}", err=True)
    else:
        click.echo(f"[!] Login failed: {err}", err=True)
    sys.exit(1)


def _run_cancellable(fn):
    """Run fn(cancel) on a worker thread; Ctrl+C sets the cancel event."""
    cancel = threading.Event()
    outcome = {}

    def worker():
        try:
            outcome["record"] = fn(cancel)
        except AuthError as e:
            outcome["error"] = e

    thread = threading.Thread(target=worker, name="login-chain", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(0.5)
    except KeyboardInterrupt:
        click.echo()
        click.echo("[*] Cancelling...")
        cancel.set()
        thread.join(10)

    if "error" in outcome:
        _fail(outcome["error"])
    if "record" not in outcome:
        click.echo("[!] Login did not finish.", err=True)
        sys.exit(1)
    return outcome["record"]


def _show_device_code(flow, open_page):
    click.echo()
    click.echo("=" * 56)
    click.echo(f"  Go to:   {flow.verification_uri}")
    click.echo(f"  Enter:   {flow.user_code}")
    click.echo("=" * 56)
    click.echo()
    if open_page:
        webbrowser.open(flow.verification_uri)
    click.echo("[*] Waiting for you to sign in... (Ctrl+C to cancel)")


def _format_expiry(ts):
    remaining = ts - datetime.now(timezone.utc)
    hours = remaining.total_seconds() / 3600
    if hours <= 0:
        return f"{ts.isoformat()} (expired)"
    if hours < 1:
        return f"{ts.isoformat()} ({int(hours * 60)}m left)"
    return f"{ts.isoformat()} ({hours:.1f}h left)"


@click.group()
@click.option("--debug", is_flag=True, help="Verbose logging to stderr.")
def cli(debug):
    """Minecraft account login for Nix Client Launcher."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--browser", is_flag=True, help="Use the browser redirect flow instead of a device code.")
@click.option("--open/--no-open", "open_page", default=True,
              help="Open the login page in the default browser.")
@click.option("--timeout", type=int, default=300, show_default=True,
              help="Seconds to wait for the browser redirect.")
def login(browser, open_page, timeout):
    """Sign in and save the account."""
    _banner("Nix Client Launcher - Microsoft Login")

    if browser:
        click.echo("[*] Complete the sign-in in your browser...")
        record = _run_cancellable(lambda cancel: launcher_auth.login(
            launcher_auth.LoginMethod.BROWSER, cancel=cancel, timeout=timeout,
            open_browser=webbrowser.open if open_page else click.echo))
    else:
        click.echo("[*] Starting device code flow...")
        record = _run_cancellable(lambda cancel: launcher_auth.login(
            launcher_auth.LoginMethod.DEVICE_CODE, cancel=cancel,
            on_device_code=lambda flow: _show_device_code(flow, open_page)))

    click.echo()
    click.echo(f"[+] Login successful for: {record.profile_name}")
    click.echo(f"    UUID: {record.profile_id}")


@cli.command()
def refresh():
    """Refresh the stored account's tokens."""
    try:
        record = launcher_auth.load_account()
    except AuthError as e:
        _fail(e)
    if record is None:
        click.echo("No account found. Run: nix-login login")
        sys.exit(1)

    click.echo(f"[*] Refreshing tokens for {record.profile_name}...")
    try:
        record = launcher_auth.refresh_login(record)
    except ChainStageError as e:
        click.echo(f"[!] Refresh failed: {e}", err=True)
        click.echo("    Sign in again with: nix-login login", err=True)
        sys.exit(1)
    click.echo(f"[+] Tokens refreshed. Minecraft token valid until {record.mc_expiry.isoformat()}")


@cli.command()
def status():
    """Show the stored account and token lifetimes."""
    try:
        record = launcher_auth.load_account()
    except AuthError as e:
        _fail(e)
    if record is None:
        click.echo("Not logged in.")
        return
    click.echo(f"  Account:    {record.profile_name}")
    click.echo(f"  UUID:       {record.profile_id}")
    click.echo(f"  Minecraft:  {_format_expiry(record.mc_expiry)}")
    click.echo(f"  Microsoft:  {_format_expiry(record.ms_expiry)}")


@cli.command()
def ensure():
    """Start-up check. Exits 1 when a full login is required."""
    record = launcher_auth.ensure_account()
    if record is None:
        click.echo("Login required. Run: nix-login login")
        sys.exit(1)
    click.echo(f"[+] Ready: {record.profile_name}")


if __name__ == "__main__":
    cli()
