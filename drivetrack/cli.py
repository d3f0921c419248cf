"""
DriveTrack command line.

Usage:
    drivetrack track --simulate --duration 60
    drivetrack history --limit 5 --order desc
    drivetrack signup you@example.com
    drivetrack login you@example.com
    drivetrack logout
    drivetrack serve

Environment Variables:
    DRIVETRACK_SUPABASE_URL      - Hosted backend base URL
    DRIVETRACK_SUPABASE_ANON_KEY - Hosted backend public API key
    DRIVETRACK_SESSION_FILE      - Where to keep the signed-in session
    DRIVETRACK_TRACK_STORE       - rest, local or memory
    DRIVETRACK_PROVIDERS         - JSON list, e.g. '["serial", "zmq"]'
    DRIVETRACK_LOG_LEVEL         - Logging level
"""
import argparse
import asyncio
import getpass
import signal
import sys
from typing import Optional

import structlog

from drivetrack.config import Settings, get_settings
from drivetrack.exceptions import TrackingError
from drivetrack.logging_config import configure_logging
from drivetrack.models import Order
from drivetrack.services.auth import AuthClient
from drivetrack.services.runtime import TrackerRuntime

logger = structlog.get_logger("cli")


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if getattr(args, "simulate", False):
        settings = settings.model_copy(update={"providers": ["simulated"]})
    return settings


async def cmd_track(args: argparse.Namespace) -> int:
    runtime = TrackerRuntime(_settings_for(args))
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        try:
            provider = await runtime.session.start()
        except TrackingError as e:
            print(f"{e.title}: {e}", file=sys.stderr)
            return 1
        print(f"Tracking with provider '{provider}'. Ctrl-C to stop.")

        try:
            await asyncio.wait_for(
                _print_samples(runtime.session, args.interval, stop_event),
                timeout=args.duration,
            )
        except asyncio.TimeoutError:
            pass
    finally:
        # Teardown stops the watch and settles pending writes
        await runtime.close()
    return 0


async def _print_samples(session, interval: float, stop_event: asyncio.Event) -> None:
    last_count = 0
    while not stop_event.is_set():
        if session.sample_count != last_count and session.current_sample is not None:
            last_count = session.sample_count
            sample = session.current_sample
            print(f"({sample.latitude:.6f}, {sample.longitude:.6f})  {session.advisory}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def cmd_history(args: argparse.Namespace) -> int:
    runtime = TrackerRuntime(_settings_for(args))
    try:
        records = await runtime.history.load(limit=args.limit, order=Order(args.order))
    except TrackingError as e:
        print(f"{e.title}: {e}", file=sys.stderr)
        return 1
    finally:
        await runtime.close()

    if not records:
        print("No tracks recorded yet.")
    for r in records:
        print(f"{r.captured_at.isoformat()}  Lat: {r.latitude:.6f}, Long: {r.longitude:.6f}")
    return 0


def _auth_client(settings: Settings) -> Optional[AuthClient]:
    if not settings.supabase_url or not settings.supabase_anon_key:
        print("Hosted authentication is not configured (DRIVETRACK_SUPABASE_URL).", file=sys.stderr)
        return None
    return AuthClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        session_file=settings.session_file,
        timeout_s=settings.http_timeout_s,
    )


async def cmd_auth(args: argparse.Namespace) -> int:
    auth = _auth_client(get_settings())
    if auth is None:
        return 1
    try:
        if args.command == "logout":
            await auth.sign_out()
            print("You have been successfully logged out.")
            return 0

        password = getpass.getpass("Password: ")
        if args.command == "signup":
            session = await auth.sign_up(args.email, password)
            if session is None:
                print("Account created. Please check your email to confirm your account.")
            else:
                print(f"Account created and signed in as {session.email or session.user_id}.")
        else:
            session = await auth.sign_in(args.email, password)
            print(f"Signed in as {session.email or session.user_id}.")
        return 0
    except TrackingError as e:
        print(f"{e.title}: {e}", file=sys.stderr)
        return 1
    finally:
        await auth.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="drivetrack", description="DriveTrack location tracker")
    sub = parser.add_subparsers(dest="command", required=True)

    track = sub.add_parser("track", help="Track the current location")
    track.add_argument("--simulate", action="store_true", help="Use the simulated GPS provider")
    track.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    track.add_argument("--interval", type=float, default=1.0, help="Print interval in seconds")

    history = sub.add_parser("history", help="Show recent tracks")
    history.add_argument("--limit", type=int, default=5)
    history.add_argument("--order", choices=[o.value for o in Order], default=Order.DESC.value)

    for name in ("signup", "login"):
        p = sub.add_parser(name, help=f"{name.title()} with email and password")
        p.add_argument("email")
    sub.add_parser("logout", help="Sign out")
    sub.add_parser("serve", help="Run the HTTP API")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, debug=settings.debug)
    logger.debug("DriveTrack CLI", command=args.command)

    if args.command == "serve":
        from drivetrack.main import run
        run()
        return 0
    if args.command == "track":
        return asyncio.run(cmd_track(args))
    if args.command == "history":
        return asyncio.run(cmd_history(args))
    return asyncio.run(cmd_auth(args))


if __name__ == "__main__":
    sys.exit(main())
