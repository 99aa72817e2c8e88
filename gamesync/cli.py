"""Command line entry point"""

import argparse
import sys
from gettext import gettext as _

from gamesync import settings
from gamesync.exceptions import GameSyncError
from gamesync.game_launcher import LaunchState, UserDecision
from gamesync.util.log import logger, set_debug


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gamesync", description=_("Synchronize game saves with store clouds"))
    parser.add_argument("-v", "--version", action="version", version="%s %s" % (settings.PROJECT, settings.VERSION))
    parser.add_argument("-d", "--debug", action="store_true", help=_("Show debug messages"))
    subparsers = parser.add_subparsers(dest="command")

    sync_parser = subparsers.add_parser("sync", help=_("Sync the saves of a game before launching it"))
    sync_parser.add_argument("container_id", help=_("Container of the game, e.g. GOG_1207658924"))
    sync_parser.add_argument("--offline", action="store_true", help=_("Skip the cloud, the game runs offline"))
    sync_parser.add_argument(
        "--keep",
        choices=("local", "remote"),
        help=_("Copy to keep if the saves are in conflict"),
    )

    upload_parser = subparsers.add_parser("upload", help=_("Upload the saves of a game after it exited"))
    upload_parser.add_argument("container_id")
    upload_parser.add_argument("--offline", action="store_true")
    upload_parser.add_argument("--force", action="store_true", help=_("Upload every save, whatever the cloud has"))

    status_parser = subparsers.add_parser("status", help=_("Show the sync and download status of a game"))
    status_parser.add_argument("container_id")
    status_parser.add_argument("-j", "--json", action="store_true", help=_("Print the status as JSON"))
    return parser


def run_sync(application, args) -> int:
    launch = application.create_launch(args.container_id, is_offline=args.offline)
    state = launch.start()
    if state == LaunchState.AWAITING_USER_DECISION:
        print("%s: %s" % (launch.dialog.title, launch.dialog.message))
        if args.keep:
            decision = UserDecision.KEEP_LOCAL if args.keep == "local" else UserDecision.KEEP_REMOTE
            state = launch.decide(decision)
    if state == LaunchState.PROCEEDED:
        logger.info("Saves of %s are ready, the game can be launched", launch.container)
        return 0
    return 1


def main(argv=None) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)
    set_debug(args.debug)
    if not args.command:
        parser.print_help()
        return 2

    from gamesync.application import Application  # pylint: disable=import-outside-toplevel

    application = Application()
    try:
        if args.command == "sync":
            return run_sync(application, args)
        if args.command == "upload":
            if args.force:
                results = application.force_upload(args.container_id)
                return 1 if any(not result.completed for result in results) else 0
            application.upload(args.container_id, is_offline=args.offline)
            return 0
        if args.command == "status":
            application.print_status(args.container_id, as_json=args.json)
            return 0
    except GameSyncError as ex:
        logger.error(ex.message)
        return 1
    finally:
        application.shutdown()
    return 2


if __name__ == "__main__":
    sys.exit(main())
