#!/usr/bin/env python3
"""
octunnel  —  SSH port-forward supervisor
========================================

Subcommands:
  start         Start the SSH tunnel in the background and open the browser.
  start-watch   Start the tunnel, open a browser instance, stop the tunnel when it closes.
  stop          Stop the SSH tunnel.
  status        Show tunnel status and whether the dashboard/gateway ports answer.
  restart       Restart the tunnel and open the browser.
  sync-vault    Mirror the remote vault directory into the local vault.

Settings come from the environment and the nearest .env file:
  KEY_PATH, HOST (required)   TOKEN, PORT_LOCAL, PORT_REMOTE, GATEWAY_PORT,
  HOST_BIND, BROWSER_APP, OCTUNNEL_STATE_DIR, VAULT_* (optional)

Run 'octunnel <subcommand> --help' for more details.
"""
import sys
import argparse
from pathlib import Path

SETTINGS_HELP = """\
required: KEY_PATH, HOST
optional: TOKEN, PORT_LOCAL (8080), PORT_REMOTE (3000), GATEWAY_PORT (18789),
          HOST_BIND (127.0.0.1), BROWSER_APP, OCTUNNEL_STATE_DIR
vault:    VAULT_REMOTE_PATH, VAULT_STAGING_DIR, VAULT_LOCAL_DIR
"""


# ── helpers ──────────────────────────────────────────────────────────────────

def _fail(exc):
    print(f"error: {exc}", file=sys.stderr)
    sys.exit(1)


def _settings(args) -> dict:
    from octunnel import config as _cfg

    overrides = {}
    if getattr(args, "state_dir", None):
        overrides["OCTUNNEL_STATE_DIR"] = args.state_dir
    env_file = Path(args.env_file) if getattr(args, "env_file", None) else None
    settings = _cfg.resolve_settings(env_file=env_file, overrides=overrides)
    if args.verbose and settings.get("_ENV_FILE"):
        print(f"[config] Using {settings['_ENV_FILE']}")
    return settings


def _supervisor(args, strict=True):
    from octunnel.config import TunnelConfig
    from octunnel.core.supervisor import Supervisor
    from octunnel.exceptions import ConfigurationError

    try:
        cfg = TunnelConfig.from_settings(_settings(args), strict=strict)
    except ConfigurationError as exc:
        _fail(exc)
    return Supervisor(cfg)


def _start(sup):
    from octunnel.exceptions import TunnelError

    try:
        result = sup.start()
    except TunnelError as exc:
        _fail(exc)
    print(result.message)
    return result


def _open_browser(sup, args):
    from octunnel.operations.browser import open_url

    if getattr(args, "no_browser", False):
        return
    url = sup.config.url
    if open_url(url):
        print(f"Opened {url}")
    else:
        print(f"Open {url} in your browser.")


# ── tunnel commands ──────────────────────────────────────────────────────────

def cmd_start(args):
    """Start the tunnel (no-op if already running) and open the URL."""
    sup = _supervisor(args)
    _start(sup)
    _open_browser(sup, args)


def cmd_start_watch(args):
    """Start the tunnel, block on a browser instance, then stop the tunnel."""
    from octunnel.operations.browser import open_and_wait

    sup = _supervisor(args)
    _start(sup)
    print(f"Opening {sup.config.browser_app} and watching for close...")
    try:
        open_and_wait(sup.config.browser_app, sup.config.url)
    except (OSError, KeyboardInterrupt) as exc:
        print(f"Browser watch ended: {str(exc) or 'interrupted'}", file=sys.stderr)
    print("Browser closed, stopping tunnel...")
    print(sup.stop().message)


def cmd_stop(args):
    """Stop the tunnel. Succeeds when it is already stopped."""
    from octunnel.exceptions import StateError

    sup = _supervisor(args, strict=False)
    record = sup.store.load()
    if record is not None and sup.launcher.is_alive(record.pid):
        print(f"Stopping tunnel (PID {record.pid})...")
    try:
        print(sup.stop().message)
    except StateError as exc:
        _fail(exc)


def cmd_status(args):
    """Print a one-line status summary."""
    sup = _supervisor(args, strict=False)
    print(sup.status().message)


def cmd_restart(args):
    """Stop then start the tunnel, and open the URL."""
    from octunnel.exceptions import TunnelError

    sup = _supervisor(args)
    print("Restarting tunnel...")
    try:
        result = sup.restart()
    except TunnelError as exc:
        _fail(exc)
    print(result.message)
    _open_browser(sup, args)


# ── vault ────────────────────────────────────────────────────────────────────

def cmd_sync_vault(args):
    """Mirror the remote vault into the local vault directory."""
    from octunnel.config import VaultConfig
    from octunnel.exceptions import TunnelError
    from octunnel.operations.vault_sync import sync_vault

    try:
        cfg = VaultConfig.from_settings(_settings(args))
        print(sync_vault(cfg, assume_yes=args.yes))
    except TunnelError as exc:
        _fail(exc)


# ── main ──────────────────────────────────────────────────────────────────────

def _add_common(p):
    p.add_argument("--env-file", metavar="PATH",
                   help="Read settings from this .env (default: nearest .env upward)")
    p.add_argument("--state-dir", metavar="PATH",
                   help="Directory for tunnel.pid / tunnel.log")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Show extra output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="octunnel",
        description="SSH port-forward supervisor",
        epilog=SETTINGS_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    start_p = subparsers.add_parser(
        "start",
        help="Start SSH tunnel in background and open browser",
        description="Start the SSH tunnel (no-op if running) and open the forwarded URL.",
    )
    _add_common(start_p)
    start_p.add_argument("--no-browser", action="store_true",
                         help="Do not open the forwarded URL")

    watch_p = subparsers.add_parser(
        "start-watch",
        help="Start tunnel, open browser app instance, stop tunnel when browser closes",
    )
    _add_common(watch_p)

    stop_p = subparsers.add_parser("stop", help="Stop SSH tunnel")
    _add_common(stop_p)

    status_p = subparsers.add_parser("status", help="Show tunnel status")
    _add_common(status_p)

    restart_p = subparsers.add_parser("restart", help="Restart tunnel and open browser")
    _add_common(restart_p)
    restart_p.add_argument("--no-browser", action="store_true",
                           help="Do not open the forwarded URL")

    vault_p = subparsers.add_parser(
        "sync-vault",
        help="Mirror the remote vault into the local vault",
        description="One-way rsync of VAULT_REMOTE_PATH on HOST into VAULT_LOCAL_DIR.",
    )
    _add_common(vault_p)
    vault_p.add_argument("-y", "--yes", action="store_true",
                         help="Do not ask for confirmation")

    return parser


COMMANDS = {
    "start": cmd_start,
    "start-watch": cmd_start_watch,
    "stop": cmd_stop,
    "status": cmd_status,
    "restart": cmd_restart,
    "sync-vault": cmd_sync_vault,
}


def main(argv=None):
    """CLI entry point for octunnel"""
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    from octunnel.utils.logging import set_verbose
    set_verbose(args.verbose)
    handler(args)


if __name__ == "__main__":
    main()
