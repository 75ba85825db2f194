"""CLI entry point for match verification.

Provides ``main()`` as the sync entry point for the ``match-verify``
console script, and ``async_main(args)`` which sets up logging, opens
the database and runs one subcommand.

Usage::

    match-verify host --user alice --type doubles --qr-image data/qr.png
    match-verify join --user bob --payload "http://localhost:3000/match-verify?id=...&code=..."
    match-verify join --user bob --match-id 3f9c... --code 7F2QK1
    match-verify scan --user carol --preview
    match-verify open-link "http://localhost:3000/match-verify?id=...&code=..." --session-key tab-1
    match-verify resume --session-key tab-1 --user dave
"""

import argparse
import asyncio
import logging
import time

from matchverify.auth import StaticAuthProvider
from matchverify.config import VerifyConfig
from matchverify.db import Database
from matchverify.guest import GuestEntryFlow, GuestState
from matchverify.joiner import JoinFlow, JoinState
from matchverify.lifecycle import ShutdownHandler
from matchverify.logging_config import setup_logging
from matchverify.models import MatchType
from matchverify.pending_repository import PendingVerificationRepository
from matchverify.repository import MatchRepository
from matchverify.session import HostSession, HostState, SessionManager
from matchverify.verification import VerificationService

logger = logging.getLogger(__name__)

# How often long-running commands check for Ctrl+C / completion
_WATCH_INTERVAL = 0.25


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the match-verify CLI."""
    parser = argparse.ArgumentParser(
        prog="match-verify",
        description="Host, scan and verify played matches",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default="data",
        help="Data directory for the database and logs (default: data)",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="Base URL encoded into match links (default: http://localhost:3000)",
    )
    parser.add_argument(
        "--fragment-routing",
        action="store_true",
        help="Encode hash-routed links (/#/match-verify?...)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between quorum polls while hosting (default: 3.0)",
    )
    parser.add_argument(
        "--host-auto-join",
        action="store_true",
        help="Count the host toward the quorum without scanning",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    host = sub.add_parser("host", help="Create a match and wait for players to verify")
    host.add_argument("--user", required=True, help="Host user id")
    host.add_argument(
        "--type",
        choices=["singles", "doubles"],
        default="singles",
        help="Match type; fixes the quorum at 2 or 4 (default: singles)",
    )
    host.add_argument("--qr-image", type=str, default=None, help="Write the QR code PNG here")
    host.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up and cancel after this many seconds (default: wait until Ctrl+C)",
    )

    join = sub.add_parser("join", help="Verify a pasted link or a typed code")
    join.add_argument("--user", required=True, help="Joining user id")
    join.add_argument("--payload", type=str, default=None, help="Scanned link or legacy JSON")
    join.add_argument("--match-id", type=str, default=None, help="Match id (manual entry)")
    join.add_argument("--code", type=str, default=None, help="Verification code (manual entry)")

    scan = sub.add_parser("scan", help="Scan a match QR code with the camera")
    scan.add_argument("--user", required=True, help="Joining user id")
    scan.add_argument("--camera-index", type=int, default=None, help="Video device index (default: 0)")
    scan.add_argument("--scan-fps", type=float, default=None, help="Decode attempts per second (default: 10)")
    scan.add_argument("--preview", action="store_true", help="Show the camera preview window")

    open_link = sub.add_parser("open-link", help="Open a verification link, signed in or not")
    open_link.add_argument("link", help="Verification link")
    open_link.add_argument("--session-key", required=True, help="Client session that opened the link")
    open_link.add_argument("--user", default=None, help="Signed-in user id (omit for a guest)")

    resume = sub.add_parser("resume", help="Resume a guest's verification after signup/login")
    resume.add_argument("--session-key", required=True, help="Client session that opened the link")
    resume.add_argument("--user", required=True, help="Newly authenticated user id")

    return parser


def build_config(args: argparse.Namespace) -> VerifyConfig:
    """Apply CLI overrides on top of the VerifyConfig defaults."""
    overrides = {
        "data_dir": args.data_dir,
        "db_path": f"{args.data_dir}/matchverify.db",
        "fragment_routing": args.fragment_routing,
        "host_auto_join": args.host_auto_join,
    }
    if args.base_url is not None:
        overrides["base_url"] = args.base_url
    if args.poll_interval is not None:
        overrides["poll_interval"] = args.poll_interval
    if getattr(args, "camera_index", None) is not None:
        overrides["camera_index"] = args.camera_index
    if getattr(args, "scan_fps", None) is not None:
        overrides["scan_fps"] = args.scan_fps
    return VerifyConfig(**overrides)


def _report_join(flow: JoinFlow) -> int:
    if flow.state is JoinState.VERIFIED:
        if flow.already_joined:
            logger.info("Already joined -- nothing to do")
        elif flow.result is not None:
            result = flow.result
            logger.info(
                "Participation verified for match %s (%d/%d)%s",
                result.match_id, len(result.participants), result.quorum,
                f", opponents: {', '.join(result.opponents)}" if result.opponents else "",
            )
        return 0
    if flow.error is not None:
        logger.error("%s", flow.error.user_message)
    return 1


def _report_guest(flow: GuestEntryFlow) -> int:
    if flow.state is GuestState.GUEST_PROMPT:
        match_type = flow.match.match_type.value if flow.match else "Match"
        logger.info("You've been challenged to a %s match. Sign in to verify it:", match_type)
        logger.info("  Create account: %s", flow.signup_url)
        logger.info("  Login:          %s", flow.login_url)
        return 0
    if flow.state is GuestState.SUCCESS:
        logger.info(
            "Participation verified for match %s%s",
            flow.code.match_id if flow.code else "?",
            " (already joined)" if flow.already_joined else "",
        )
        return 0
    if flow.error is not None:
        logger.error("Verification failed: %s", flow.error.user_message)
    return 1


async def _run_host(args, config, repo, verifier) -> int:
    shutdown = ShutdownHandler()
    shutdown.install()
    manager = SessionManager(repo, config)
    session = HostSession(args.user, manager, repo, config, verifier=verifier)
    session.select_type(MatchType(args.type.capitalize()))

    try:
        await session.host()
        if session.state is not HostState.HOSTING:
            logger.error("%s", session.error.user_message if session.error else "Could not host")
            return 1

        logger.info(
            "Hosting %s match %s -- verification code %s",
            session.match_type.value, session.session.match_id, session.session.secret,
        )
        logger.info("Link: %s", session.payload)
        if args.qr_image:
            # Imported here so non-camera commands do not load OpenCV
            from matchverify.vision import write_qr_image

            write_qr_image(session.payload, args.qr_image, config.qr_size)

        started = time.monotonic()
        seen = -1
        while session.state is HostState.HOSTING and not shutdown.is_set:
            if await session.wait_confirmed(timeout=_WATCH_INTERVAL):
                break
            if len(session.participants) != seen:
                seen = len(session.participants)
                logger.info("Participants: %d/%d", seen, session.quorum)
            if args.timeout is not None and time.monotonic() - started > args.timeout:
                logger.warning("No quorum after %.0fs", args.timeout)
                break

        if session.state is HostState.CONFIRMED:
            logger.info("Match confirmed: %s", ", ".join(session.participants))
            return 0
        await session.cancel()
        logger.info("Match %s cancelled", session.session.match_id)
        return 1
    finally:
        await session.close()
        shutdown.restore()


async def _run_join(args, config, repo, verifier) -> int:
    flow = JoinFlow(args.user, verifier, config=config)
    if args.payload:
        await flow.submit_payload(args.payload)
    elif args.match_id and args.code:
        await flow.submit_manual(args.match_id, args.code)
    else:
        logger.error("Give --payload, or both --match-id and --code")
        return 2
    return _report_join(flow)


async def _run_scan(args, config, repo, verifier) -> int:
    from matchverify.vision import OpenCVCamera

    camera = OpenCVCamera(config, preview_window="match-verify" if args.preview else None)
    flow = JoinFlow(args.user, verifier, camera=camera, config=config)
    shutdown = ShutdownHandler()
    shutdown.install()
    try:
        task = flow.start_scanning()
        logger.info("Point the camera at the host's QR code (Ctrl+C to stop)")
        while not task.done() and not shutdown.is_set:
            await asyncio.wait({task}, timeout=_WATCH_INTERVAL)
        if not task.done():
            logger.info("Scan stopped")
            return 1
        return _report_join(flow)
    finally:
        await flow.close()
        shutdown.restore()


async def _run_open_link(args, config, repo, verifier) -> int:
    flow = GuestEntryFlow(
        args.link,
        args.session_key,
        StaticAuthProvider(args.user),
        verifier,
        PendingVerificationRepository(repo.conn),
        repo=repo,
        config=config,
    )
    await flow.open()
    return _report_guest(flow)


async def _run_resume(args, config, repo, verifier) -> int:
    pending_repo = PendingVerificationRepository(repo.conn)
    pending = pending_repo.get(args.session_key)
    if pending is None:
        logger.error("No pending verification for session %s", args.session_key)
        return 1
    flow = GuestEntryFlow.from_pending(
        pending, StaticAuthProvider(args.user), verifier, pending_repo, config
    )
    await flow.resume()
    return _report_guest(flow)


_COMMANDS = {
    "host": _run_host,
    "join": _run_join,
    "scan": _run_scan,
    "open-link": _run_open_link,
    "resume": _run_resume,
}


async def async_main(args: argparse.Namespace) -> int:
    """Async entry point: set up components and run one subcommand."""
    log_file = setup_logging(data_dir=args.data_dir, run_name=args.command)
    config = build_config(args)
    logger.debug("Running %s with %s (log=%s)", args.command, config, log_file)

    db = Database(config.db_path)
    db.initialize()
    try:
        repo = MatchRepository(db.conn)
        verifier = VerificationService(repo)
        return await _COMMANDS[args.command](args, config, repo, verifier)
    finally:
        db.close()
        logging.shutdown()


def main() -> None:
    """Sync entry point for the match-verify console script."""
    args = build_parser().parse_args()
    try:
        code = asyncio.run(async_main(args))
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)


if __name__ == "__main__":
    main()
