"""
lambda-mirror local client.

Runs the dispatcher for one channel so events hitting the deployed functions
are executed by local code.

Examples:
    lambda-mirror connect -f mirror.config.json --clean
    lambda-mirror connect -s orders-service -t lambda-mirror -r eu-west-1 -f mirror.config.json
    lambda-mirror connect -f mirror.config.json --debug-port 5678
"""
import argparse
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from mirror_utils.config import ConfigurationError, RelayConfig, load_config_file
from mirror_utils.logger import get_logger, set_log_level
from relay import Dispatcher, FileHandlerResolver, PostgresStore, get_store

logger = get_logger("lambda-mirror")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lambda-mirror",
        description="Debug deployed Lambda functions by executing their invocations locally",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    connect_parser = subparsers.add_parser("connect", help="Listen for relayed invocations")
    connect_parser.add_argument("-f", "--config-file", help="JSON config file with the function mapping")
    connect_parser.add_argument("-s", "--stack-name", dest="channel",
                                help="Channel (stack name) whose invocations to relay")
    connect_parser.add_argument("-t", "--table-name", help="Name of the mirror table")
    connect_parser.add_argument("--backend", choices=["dynamodb", "postgres"],
                                help="Transport backend (default: dynamodb)")
    connect_parser.add_argument("-p", "--aws-profile", dest="profile", help="AWS profile to use")
    connect_parser.add_argument("-r", "--aws-region", dest="region", help="AWS region of the table")
    connect_parser.add_argument("--database-url", help="PostgreSQL URL for the postgres backend")
    connect_parser.add_argument("-c", "--clean", action="store_true",
                                help="Erase all queued invocations before starting this session")
    connect_parser.add_argument("--release-non-api", action="store_true", default=None,
                                help="Delete completed non-API invocations instead of returning "
                                     "their result (the functions must set MIRROR_RELEASE_NON_API too)")
    connect_parser.add_argument("-v", "--verbose", action="store_true", help="Print debug logs")
    connect_parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: .env)")
    connect_parser.add_argument("--debug-port", type=int, default=None,
                                help="Start a debugpy listener on this port (default: $DEBUG_PORT)")
    connect_parser.add_argument("--wait-for-debugger", action="store_true",
                                help="Block until a debugger attaches to --debug-port")
    return parser


def build_config(args: argparse.Namespace):
    """
    Combine environment, config file and flags (in increasing precedence).

    Returns:
        (RelayConfig, functions mapping)
    """
    config = RelayConfig.from_env()
    functions = {}

    if args.config_file:
        settings = load_config_file(args.config_file)
        functions = settings.pop("functions")
        config = config.merged(**settings)
        logger.info("Loaded config file", path=args.config_file, functions=sorted(functions))

    config = config.merged(
        channel=args.channel,
        table_name=args.table_name,
        backend=args.backend,
        profile=args.profile,
        region=args.region,
        database_url=args.database_url,
        release_non_api=args.release_non_api,
    )
    return config.validate(), functions


def start_debugger(port: int, wait: bool = False) -> None:
    import debugpy

    debugpy.listen(("127.0.0.1", port))
    logger.info("Debugger listening", port=port)
    if wait:
        logger.info("Waiting for debugger to attach", port=port)
        debugpy.wait_for_client()
        logger.info("Debugger attached")


def connect(args: argparse.Namespace) -> int:
    if args.verbose:
        set_log_level("DEBUG")

    try:
        config, functions = build_config(args)
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        return 1

    if not functions:
        logger.error("Found no local functions to bind. Exiting...")
        return 1

    debug_port = args.debug_port or (int(os.environ["DEBUG_PORT"]) if os.environ.get("DEBUG_PORT") else None)
    if debug_port:
        start_debugger(debug_port, args.wait_for_debugger)

    store = get_store(config)
    if isinstance(store, PostgresStore):
        store.ensure_schema()

    dispatcher = Dispatcher(config, store, FileHandlerResolver(functions))

    def _shutdown(signum, frame):
        logger.info("Received signal, shutting down", signal=signum)
        dispatcher.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    dispatcher.run(clean=args.clean)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if os.path.exists(args.env_file):
        load_dotenv(args.env_file)

    if args.command == "connect":
        return connect(args)

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
