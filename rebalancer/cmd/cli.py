import argparse
import signal
import sys
import threading
from decimal import Decimal, InvalidOperation

from rebalancer.config.settings import settings
from rebalancer.config.logging import logger
from rebalancer.core.exceptions import AppError, RebalanceError
from rebalancer.core.precision import format_plain
from rebalancer.services.calculator import validate_targets
from rebalancer.services.monitor import RebalanceMonitor
from rebalancer.services.portfolio_store import PortfolioConfigStore
from rebalancer.services.report import ReportFormatter, TradeReportService, export_logs_text

# Commands that read the wallet or place orders
PRIVATE_COMMANDS = ("monitor", "snapshot", "plan", "rebalance")


def run_monitor(args):
    """Runs the monitoring loop until Ctrl+C / SIGTERM."""
    monitor = RebalanceMonitor.from_settings(args.portfolio)
    stopped = threading.Event()

    def handle_signal(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    monitor.subscribe(lambda state: logger.debug(f"State: {state.phase.value} / {state.connection_status.value}"))
    monitor.start()
    logger.info("Monitoring. Press Ctrl+C to stop.")
    while not stopped.is_set():
        stopped.wait(1)
    monitor.stop()

    if monitor.journal is not None:
        print(ReportFormatter.format_trade_logs(list(reversed(monitor.journal.recent(20)))))
    report_session(monitor, args)


def run_snapshot(args):
    monitor = RebalanceMonitor.from_settings(args.portfolio, with_stream=False)
    print(ReportFormatter.format_snapshot(monitor.calculate_portfolio_snapshot()))


def run_plan(args):
    monitor = RebalanceMonitor.from_settings(args.portfolio, with_stream=False)
    print(ReportFormatter.format_plan(monitor.plan_once()))


def run_rebalance(args):
    monitor = RebalanceMonitor.from_settings(args.portfolio, with_stream=False)
    if settings.DRY_RUN:
        logger.info("DRY_RUN is set, trades are only logged")
    logs = monitor.run_once()
    if logs is None:
        print(f"Rebalance failed: {monitor.state.error_message}")
        report_session(monitor, args)
        sys.exit(1)
    print(ReportFormatter.format_trade_logs(logs))
    report_session(monitor, args)


def report_session(monitor, args):
    """Prints the trade and log counts of this run and writes the log export when --export-logs is given."""
    if monitor.journal is None:
        return
    print(ReportFormatter.format_stats(monitor.journal.stats()))
    log_store = monitor.log_store
    if log_store is None:
        return
    problems = log_store.errors_and_warnings(limit=10)
    if problems:
        print("Recent errors and warnings:")
        print(ReportFormatter.format_app_logs(problems))
    if args.export_logs:
        export_logs_text(log_store, args.export_logs, tag=args.log_tag, search=args.log_search)
        print(f"Logs exported to {args.export_logs}")


def run_config(args):
    store = PortfolioConfigStore(args.portfolio or settings.PORTFOLIO_FILE, settings.REBALANCE_THRESHOLD)

    if args.config_command == "set":
        try:
            percentage = Decimal(args.percentage)
        except InvalidOperation:
            print(f"Invalid percentage: {args.percentage}")
            sys.exit(1)
        store.set_target(args.coin, percentage)
    elif args.config_command == "remove":
        if not store.remove_coin(args.coin):
            print(f"{args.coin.upper()} is not in the portfolio")
    elif args.config_command == "enable":
        store.set_enabled(args.coin, True)
    elif args.config_command == "disable":
        store.set_enabled(args.coin, False)
    elif args.config_command == "threshold":
        store.set_threshold(Decimal(args.value))
    elif args.config_command == "activate":
        store.set_active(True)
    elif args.config_command == "deactivate":
        store.set_active(False)

    config = store.load()
    disabled = store.disabled_coins()
    print(f"Active: {config.is_active}  Threshold: {format_plain(config.threshold)}%")
    for coin, pct in config.targets.items():
        print(f"  {coin:<8}{format_plain(pct):>8}%")
    for coin in disabled:
        print(f"  {coin:<8}{'(disabled)':>12}")
    validation = validate_targets(config.targets)
    print(f"Validation: {validation.message}")


def run_export(args):
    if not (settings.NOTION_TOKEN and settings.NOTION_TRADE_DB_ID):
        print("Trade export reads the Notion journal: set NOTION_TOKEN and NOTION_TRADE_DB_ID")
        sys.exit(1)
    from rebalancer.infrastructure.notion.client import NotionTradeStore
    trades = NotionTradeStore().query_trade_logs()
    path = TradeReportService().export(trades, args.path, args.format)
    print(f"Exported {len(trades)} trade(s) to {path}")


def main():
    parser = argparse.ArgumentParser(description="Bybit spot portfolio rebalancer")
    parser.add_argument("--portfolio", help="Portfolio JSON file (default: PORTFOLIO_FILE)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    log_options = argparse.ArgumentParser(add_help=False)
    log_options.add_argument("--export-logs", metavar="PATH", help="Write this run's application logs to PATH on exit")
    log_options.add_argument("--log-tag", help="Only export logs with this tag (e.g. Trade, WebSocket)")
    log_options.add_argument("--log-search", help="Only export logs whose message contains this text")

    subparsers.add_parser("monitor", parents=[log_options], help="Run the rebalancing loop until interrupted")
    subparsers.add_parser("snapshot", help="Show the current portfolio allocation")
    subparsers.add_parser("plan", help="Show the trades a rebalance would make")
    subparsers.add_parser("rebalance", parents=[log_options], help="Run a single rebalance pass")

    config_parser = subparsers.add_parser("config", help="Show or edit target allocations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show targets")
    set_parser = config_sub.add_parser("set", help="Set a coin's target percentage")
    set_parser.add_argument("coin")
    set_parser.add_argument("percentage")
    remove_parser = config_sub.add_parser("remove", help="Remove a coin")
    remove_parser.add_argument("coin")
    enable_parser = config_sub.add_parser("enable", help="Enable a coin")
    enable_parser.add_argument("coin")
    disable_parser = config_sub.add_parser("disable", help="Disable a coin without removing it")
    disable_parser.add_argument("coin")
    threshold_parser = config_sub.add_parser("threshold", help="Set the rebalance threshold (%%)")
    threshold_parser.add_argument("value")
    config_sub.add_parser("activate", help="Resume rebalancing")
    config_sub.add_parser("deactivate", help="Pause rebalancing, the monitor keeps running")

    export_parser = subparsers.add_parser("export-trades", help="Export the trade journal")
    export_parser.add_argument("path")
    export_parser.add_argument("--format", choices=["csv", "excel"], default="csv")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if settings is None:
        print("Configuration could not be loaded, check your environment / .env")
        sys.exit(1)

    if args.command in PRIVATE_COMMANDS and not settings.has_api_credentials:
        print("BYBIT_API_KEY and BYBIT_API_SECRET must be set for this command")
        sys.exit(1)

    commands = {
        "monitor": run_monitor,
        "snapshot": run_snapshot,
        "plan": run_plan,
        "rebalance": run_rebalance,
        "config": run_config,
        "export-trades": run_export,
    }
    try:
        commands[args.command](args)
    except RebalanceError as e:
        logger.error(f"Rebalance failed: {e}")
        sys.exit(1)
    except AppError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
