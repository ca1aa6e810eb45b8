import argparse
from dataclasses import dataclass, field

from tokenledger.config import Config
from tokenledger.models import DateRange, SessionSortOrder


@dataclass
class Options:
    """
    Options are the one-shot switches that only make sense on the
    command line, next to the shared Config.
    """

    config: "Config" = field(default_factory=Config)
    once: "bool" = False
    full: "bool" = False
    date_range: "DateRange" = field(default_factory=DateRange)
    project: "str | None" = None
    sessions: "SessionSortOrder | None" = None
    check: "bool" = False


def _date_range(value: "str") -> "DateRange":
    try:
        return DateRange.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int(value: "str") -> "int":
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def parse_args(argv: "list[str] | None" = None) -> "Options":
    config = Config.from_env()
    parser = argparse.ArgumentParser(
        prog="tokenledger",
        description="Usage statistics for CLI JSONL usage logs",
    )
    parser.add_argument(
        "--log.dir",
        dest="log_dir",
        default=config.log_dir,
        help=f"Directory of *.jsonl usage logs (default: {config.log_dir})",
    )
    parser.add_argument(
        "--db.path",
        dest="db_path",
        default=config.db_path,
        help=f"SQLite database path (default: {config.db_path})",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to listen on (default: :9186)",
    )
    parser.add_argument(
        "--sync.interval",
        dest="sync_interval",
        type=_positive_int,
        default=900,
        help="Auto-sync interval in seconds (default: 900)",
    )
    parser.add_argument(
        "--sync.batch-size",
        dest="batch_size",
        type=_positive_int,
        default=10,
        help="Files per sync batch (default: 10)",
    )
    parser.add_argument(
        "--cache.ttl",
        dest="cache_ttl",
        type=_positive_int,
        default=1800,
        help="Statistics cache TTL in seconds (default: 1800)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Render logs as JSON",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sync, print statistics as JSON and exit",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="With --once, rebuild everything instead of an incremental sync",
    )
    parser.add_argument(
        "--range",
        dest="date_range",
        type=_date_range,
        default=DateRange(),
        help="With --once: all, today, <N>d or YYYY-MM-DD..YYYY-MM-DD (default: all)",
    )
    parser.add_argument(
        "--project",
        default=None,
        help="With --once, restrict statistics to one project path",
    )
    parser.add_argument(
        "--sessions",
        type=SessionSortOrder,
        default=None,
        choices=list(SessionSortOrder),
        metavar="{" + ",".join(o.value for o in SessionSortOrder) + "}",
        help="With --once, add the per-project session breakdown in this order",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="With --once, validate the database and report issues",
    )

    args = parser.parse_args(argv)
    for flag, value in (
        ("--full", args.full),
        ("--sessions", args.sessions),
        ("--check", args.check),
    ):
        if value and not args.once:
            parser.error(f"{flag} requires --once")

    config.log_dir = args.log_dir
    config.db_path = args.db_path
    config.listen_address = args.listen_address
    config.sync_interval = args.sync_interval
    config.batch_size = args.batch_size
    config.cache_ttl = args.cache_ttl
    # keep the near-expiry window inside short TTLs
    config.cache_near_expiry = min(config.cache_near_expiry, args.cache_ttl)
    config.log_level = args.log_level
    config.log_json = args.log_json
    try:
        config.tz
    except ValueError as exc:
        parser.error(str(exc))

    return Options(
        config=config,
        once=args.once,
        full=args.full,
        date_range=args.date_range,
        project=args.project,
        sessions=args.sessions,
        check=args.check,
    )
