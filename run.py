#!/usr/bin/env python3
"""
Orca PnL -- Whirlpool Position Profitability Analyzer
=====================================================

Reconstructs Orca Whirlpool (concentrated liquidity) positions from
on-chain history and measures their profit against simply holding the
deposited tokens.

Usage:
  python run.py analyze --address <addr> [<addr> …]       Closed positions touched by the addresses
  python run.py analyze -a <addr> --include-open          Include open positions (live quote)
  python run.py analyze -a <addr> -n 5 --csv ~/pnl.csv    Deeper history, CSV export
  python run.py analyze -a <addr> --summary whirlpool     Group the table by pool
  python run.py -a <addr>                                 ``analyze`` is the default command
  python run.py find --pool <whirlpool> --min 1000        Liquidity providers of a pool
  python run.py find --count 20 --as-params               Print an ``analyze`` command line

Configuration (environment or .env):
  RPC_URL                 Solana JSON-RPC endpoint (required)
  COINGECKO_PRO_API_KEY   CoinGecko pro key (optional)

Sources:
  Orca Whirlpools   : https://github.com/orca-so/whirlpools
  Solana JSON-RPC   : https://solana.com/docs/rpc
  CoinGecko API     : https://docs.coingecko.com/reference/introduction
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path
from typing import List, Optional

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from orca_pnl.central_config import PROJECT_VERSION, PROJECT_NAME, load_settings
from orca_pnl.commands import cmd_analyze, cmd_find
from orca_pnl.errors import ConfigError, RpcConnectionError, RpcError
from orca_pnl.logger import configure_logging
from orca_pnl.report_writer import SUMMARY_KEYS

logger = logging.getLogger("orca_pnl")

COMMANDS = ("analyze", "find")
DEFAULT_COMMAND = "analyze"


# ── CLI Parser ────────────────────────────────────────────────────────────


def _global_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    common.add_argument("-d", "--debug", action="store_true", help="Log per-position details")
    common.add_argument(
        "--full-address", action="store_true", help="Show full addresses instead of abcd...wxyz"
    )
    return common


def create_parser() -> argparse.ArgumentParser:
    common = _global_options()
    parser = argparse.ArgumentParser(
        prog="pnl",
        description=f"{PROJECT_NAME} v{PROJECT_VERSION} — Orca Whirlpool PnL Analyzer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pnl analyze -a <wallet>                        Closed positions of a wallet
  pnl analyze -a <pool> -n 3 --include-open      Three pages of pool history, open positions too
  pnl analyze -a <wallet> --csv ~/orca/pnl.csv   Export every summary field
  pnl find -p <pool> --min 1000 --max 100000     Providers with $1k–$100k positions
  pnl find -p <pool> --as-params                 Print 'pnl analyze --address …'

Addresses may be pools, wallets, positions or position mints.
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"{PROJECT_NAME} v{PROJECT_VERSION}"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    analyze_p = sub.add_parser(
        "analyze", parents=[common], help="Analyze positions touched by the addresses (default)"
    )
    analyze_p.add_argument(
        "-a", "--address", nargs="+", action="extend", required=True,
        help="Pool, wallet, position or position-mint address (repeatable)",
    )
    analyze_p.add_argument(
        "-n", "--cycles", type=int, default=1,
        help="Pages of 1000 signatures to fetch per address (default: 1)",
    )
    analyze_p.add_argument(
        "--include-open", action="store_true", help="Include positions that are still open"
    )
    analyze_p.add_argument(
        "-s", "--summary", choices=SUMMARY_KEYS, default="owner",
        help="Group the summary table by owner or whirlpool (default: owner)",
    )
    analyze_p.add_argument("--csv", type=str, default=None, help="Write every summary to this CSV file")

    find_p = sub.add_parser("find", parents=[common], help="Find liquidity providers")
    find_p.add_argument("-p", "--pool", type=str, default=None, help="Whirlpool address (default: all pools)")
    find_p.add_argument(
        "--include-out-of-range", action="store_true", help="Also consider out-of-range positions"
    )
    find_p.add_argument("-n", "--count", type=int, default=100, help="Maximum owners (default: 100)")
    find_p.add_argument("--min", type=float, default=None, help="Minimum position value in USD")
    find_p.add_argument("--max", type=float, default=None, help="Maximum position value in USD")
    find_p.add_argument(
        "--as-params", action="store_true", help="Print owners as 'pnl analyze --address …'"
    )

    return parser


def _with_default_command(argv: List[str]) -> List[str]:
    """Prepend ``analyze`` when no subcommand was given."""
    if not argv or any(arg in COMMANDS for arg in argv):
        return argv
    if argv[0] in ("-h", "--help", "--version"):
        return argv
    return [DEFAULT_COMMAND, *argv]


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(_with_default_command(argv))

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(quiet=args.quiet, debug=args.debug, full_address=args.full_address)
    settings = load_settings(full_address=args.full_address)

    try:
        if args.command == "analyze":
            return asyncio.run(
                cmd_analyze(
                    settings,
                    addresses=args.address,
                    cycles=args.cycles,
                    include_open=args.include_open,
                    summary=args.summary,
                    csv_path=args.csv,
                )
            )
        if args.command == "find":
            return asyncio.run(
                cmd_find(
                    settings,
                    pool=args.pool,
                    include_out_of_range=args.include_out_of_range,
                    count=args.count,
                    minimum=args.min,
                    maximum=args.max,
                    as_params=args.as_params,
                )
            )
    except (ConfigError, RpcConnectionError, RpcError) as e:
        logger.error("❌ %s", e)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
