import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from core.client import ChatSyncClient
from runtime.version import as_string
from shared.chat.errors import ChatSyncError
from shared.chat.intents import CreateMessage, MutationFailure
from shared.chat.messages import Channel
from shared.config.sync import PRESENTERS, load_sync_config
from shared.logging.logger import get_logger
from shared.storage.message_cache.store import Snapshot

log = get_logger("core.app")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="channelsync",
        description="Watch one chat channel: live messages, edits, deletes and notifications",
    )
    parser.add_argument("channel", help="Channel id to open")
    parser.add_argument("--name", help="Channel display name (used in notification titles)")
    parser.add_argument("--send", metavar="TEXT", help="Post one message before watching")
    parser.add_argument("--api-url", help="API base URL (overrides CHANNELSYNC_API_URL)")
    parser.add_argument(
        "--notifier",
        choices=sorted(PRESENTERS),
        help="Notification presenter (overrides CHANNELSYNC_NOTIFIER)",
    )
    parser.add_argument(
        "--no-notifications",
        action="store_true",
        help="Disable notifications for this run",
    )
    parser.add_argument("--version", action="version", version=as_string())
    return parser


def _log_snapshot(snapshot: Snapshot) -> None:
    if not snapshot:
        log.info("Channel empty")
        return

    latest = snapshot[-1]
    message = latest.message
    suffix = " (edited)" if message.edited else ""
    log.info(
        f"{len(snapshot)} message(s); latest [{latest.status.value}] "
        f"{message.display_sender}: {message.content}{suffix}"
    )


def _log_failure(failure: MutationFailure) -> None:
    target = f" {failure.message_id}" if failure.message_id else ""
    log.warning(f"{failure.action}{target}: {failure.user_message}")


async def main(args: argparse.Namespace, stop_event: asyncio.Event) -> int:
    # --------------------------------------------------
    # ENV + CONFIG
    # --------------------------------------------------
    load_dotenv()
    config = load_sync_config()

    if args.api_url:
        config.api.base_url = args.api_url.rstrip("/")
    if args.notifier:
        config.notifications.presenter = args.notifier
    if args.no_notifications:
        config.notifications.enabled = False

    log.info(f"{as_string()} booting (api={config.api.base_url}{config.api.prefix})")

    client = ChatSyncClient(config)
    client.on_change(_log_snapshot)
    client.on_error(_log_failure)

    try:
        # --------------------------------------------------
        # SESSION + CHANNEL
        # --------------------------------------------------
        try:
            await client.start()
            await client.open_channel(Channel(channel_id=args.channel, name=args.name or ""))
        except ChatSyncError as e:
            log.error(f"Unable to open channel {args.channel}: {e.user_message} ({e})")
            return 1

        if args.send:
            try:
                await client.dispatch(CreateMessage(args.send))
            except ChatSyncError as e:
                log.error(f"Message not sent: {e.user_message}")

        # --------------------------------------------------
        # BLOCK UNTIL SHUTDOWN SIGNAL
        # --------------------------------------------------
        await stop_event.wait()
        log.info("Shutdown initiated")

    finally:
        try:
            await client.aclose()
        except Exception as e:
            log.warning(f"Client shutdown error ignored: {e}")

    log.info("ChannelSync stopped")
    return 0


# ----------------------------------------------------------------------
# SIGNAL HANDLING
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Ctrl+C / SIGTERM handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except (ValueError, OSError) as e:
        log.debug(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    stop_event = asyncio.Event()

    _install_signal_handlers(loop, stop_event)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(main(args, stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(run())
