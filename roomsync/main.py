"""Command line host for the synchronization core.

Restores (or obtains) credentials, starts the session and keeps syncing
until interrupted, logging the room list whenever it changes.
"""

import argparse
import asyncio
import getpass
import logging
import sys

from roomsync.core.config import get_settings
from roomsync.core.exceptions import MatrixAuthenticationError
from roomsync.credentials import CredentialStore
from roomsync.dispatch import ContextDispatcher
from roomsync.media import MediaResolver
from roomsync.observers import EventBus, Topic
from roomsync.room_summary import RoomSummaryList
from roomsync.session_manager import SessionLifecycleManager

logger = logging.getLogger("roomsync.main")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def log_room_list(room_list: RoomSummaryList) -> None:
    logger.info(f"{room_list.search_placeholder()} ({room_list.connection_status()})")
    for entry in room_list.arranged():
        marker = "*" if entry.unread else " "
        logger.info(f"{marker} {entry.display_name(room_list.my_user_id)} [{entry.member_label()}]")


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    settings.ensure_data_dirs()

    bus = EventBus(single_subscriber=settings.SINGLE_SUBSCRIBER_DELEGATES)
    dispatcher = ContextDispatcher()
    dispatcher.start()

    manager = SessionLifecycleManager(
        settings, CredentialStore(settings.CREDENTIALS_FILE_PATH), bus, dispatcher
    )
    room_list = RoomSummaryList(manager, bus, dispatcher)
    room_list.attach()
    media = MediaResolver(manager, dispatcher, settings.MEDIA_CACHE_DIR_PATH)

    for topic in (Topic.DID_LOGIN, Topic.DID_JOIN_ROOM, Topic.DID_PART_ROOM):
        bus.subscribe(topic, lambda *_: log_room_list(room_list))

    try:
        if args.homeserver and args.user:
            password = args.password or getpass.getpass(f"Password for {args.user}: ")
            try:
                await manager.login(args.homeserver, args.user, password)
            except MatrixAuthenticationError as e:
                logger.error(str(e))
                return 1

        if manager.credentials is None:
            logger.error("No stored credentials; pass --homeserver and --user to log in")
            return 1

        result = await manager.start(disable_cache=args.disable_cache or None)
        if not result.ok:
            logger.error(f"Session start failed ({result.error_kind.value}): {result.message}")
            return 1

        if args.logout:
            await manager.logout()
            await dispatcher.drain()
            logger.info("Logged out")
            return 0

        logger.info("Syncing; press Ctrl+C to stop")
        await asyncio.Event().wait()
        return 0
    finally:
        await media.close()
        await manager.close()
        room_list.detach()
        await dispatcher.stop()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Synchronize Matrix rooms and keep a local timeline cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--homeserver", help="Homeserver URL for a password login")
    parser.add_argument("--user", help="Matrix user id for a password login")
    parser.add_argument("--password", help="Password (prompted when omitted)")
    parser.add_argument(
        "--disable-cache",
        action="store_true",
        help="Run without the on-disk event store",
    )
    parser.add_argument(
        "--logout",
        action="store_true",
        help="Start the stored session, log it out and wipe local data",
    )
    args = parser.parse_args()

    configure_logging(get_settings().LOG_LEVEL)

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
