"""
Orca PnL — Command Implementations
==================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher.  Each public ``cmd_*`` function corresponds to a
subcommand (analyze, find) and returns the process exit code.

``run_analysis`` sequences the collaborators for ``analyze``:
  gather transactions → decode → read positions, pools, ticks, mints
  → fetch prices → analyze (pure) → filter closed/open
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from solders.pubkey import Pubkey

from orca_pnl.central_config import Settings
from orca_pnl.coingecko_client import CoinGeckoClient
from orca_pnl.models import AnalysisResult, CollectReward, OpenPosition
from orca_pnl.report_writer import (
    format_as_params,
    log_summaries,
    print_aggregates,
    print_wallet_values,
    stdout,
    write_csv,
)
from orca_pnl.rpc_helpers import SolanaRpcClient, TaskPool, to_pubkey
from orca_pnl.token_registry import SOL_MINT

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────


def parse_addresses(values: Iterable[str]) -> List[Pubkey]:
    """Base58 strings → Pubkeys (duplicates dropped); ValueError on bad input."""
    addresses = []
    for value in values:
        try:
            addresses.append(to_pubkey(value.strip()))
        except ValueError:
            raise ValueError(f"Invalid address: {value}") from None
    return list(dict.fromkeys(addresses))


# ── Analyze ──────────────────────────────────────────────────────────────


async def run_analysis(settings: Settings, addresses: List[Pubkey], cycles: int = 1,
                       include_open: bool = False) -> AnalysisResult:
    """Fetch everything the addresses touched and analyze every position found."""
    from instruction_decoder import decode_transactions
    from position_analyzer import analyze_positions
    from position_reader import PositionReader
    from price_fetcher import PriceFetcher
    from transaction_gatherer import TransactionGatherer

    pool = TaskPool()
    async with SolanaRpcClient(settings.require_rpc_url()) as rpc, \
            CoinGeckoClient(settings.coingecko_pro_api_key) as coingecko:
        coin_ids = await coingecko.fetch_coin_ids()
        transactions = await TransactionGatherer(rpc, pool).gather(addresses, cycles)
        position_events = decode_transactions(transactions)
        if not position_events:
            logger.info("No Whirlpool positions found")
            return AnalysisResult()
        logger.info("Found %d positions", len(position_events))

        events = [e for group in position_events.values() for e in group]
        opens = [e for e in events if isinstance(e, OpenPosition)]

        reader = PositionReader(rpc)
        positions = await reader.read_positions(position_events.keys())
        pools = await reader.read_whirlpools({e.whirlpool for e in opens})
        ticks = await reader.read_ticks([p for p in positions.values() if p is not None], pools)

        mints = {SOL_MINT}
        for whirlpool in pools.values():
            mints.update((whirlpool.token_mint_a, whirlpool.token_mint_b))
            mints.update(info.mint for info in whirlpool.reward_infos if info.initialized)
        mints.update(e.reward_mint for e in events if isinstance(e, CollectReward))

        tokens = await reader.read_tokens(mints)
        fetcher = PriceFetcher(coingecko, pool, coin_ids)
        prices = await fetcher.fetch(mints, [e.block_time for e in events])

    result = analyze_positions(position_events, positions, pools, ticks, tokens, prices)
    if include_open:
        return result
    closed = tuple(s for s in result.summaries if not s.is_open)
    logger.debug("Excluding %d open positions", len(result.summaries) - len(closed))
    return AnalysisResult(summaries=closed, skipped=result.skipped)


async def cmd_analyze(settings: Settings, addresses: Iterable[str], cycles: int = 1,
                      include_open: bool = False, summary: str = "owner",
                      csv_path: Optional[str] = None) -> int:
    """Analyze the PnL of every position the addresses touched."""
    try:
        targets = parse_addresses(addresses)
    except ValueError as e:
        logger.error("%s", e)
        return 1

    result = await run_analysis(settings, targets, cycles, include_open)

    log_summaries(result.summaries)
    if result.summaries:
        print_aggregates(result.summaries, summary, settings.full_address)
    if csv_path:
        path = write_csv(result.summaries, csv_path)
        stdout.print(f"📄 CSV written to {path}")

    stdout.print(
        f"✅ Analyzed {len(result.summaries)} positions"
        + (f", ⚠️  skipped {len(result.skipped)}" if result.skipped else "")
    )
    return 0


# ── Find ─────────────────────────────────────────────────────────────────


async def cmd_find(settings: Settings, pool: Optional[str] = None,
                   include_out_of_range: bool = False, count: int = 100,
                   minimum: Optional[float] = None, maximum: Optional[float] = None,
                   as_params: bool = False) -> int:
    """Find liquidity providers and their largest position value."""
    from position_finder import PositionFinder
    from price_fetcher import PriceFetcher

    try:
        whirlpool = to_pubkey(pool) if pool else None
    except ValueError:
        logger.error("Invalid pool address: %s", pool)
        return 1

    task_pool = TaskPool()
    async with SolanaRpcClient(settings.require_rpc_url()) as rpc, \
            CoinGeckoClient(settings.coingecko_pro_api_key) as coingecko:
        coin_ids = await coingecko.fetch_coin_ids()
        finder = PositionFinder(rpc, PriceFetcher(coingecko, task_pool, coin_ids), task_pool)
        values = await finder.find(
            whirlpool=whirlpool,
            include_out_of_range=include_out_of_range,
            count=count,
            minimum=Decimal(str(minimum)) if minimum is not None else None,
            maximum=Decimal(str(maximum)) if maximum is not None else None,
        )

    if not values:
        stdout.print("❌ No liquidity providers match the filters")
        return 0
    if as_params:
        stdout.print(format_as_params(values), markup=False, highlight=False, soft_wrap=True)
    else:
        print_wallet_values(values, settings.full_address)
    return 0
