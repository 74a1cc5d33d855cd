"""
Report Writer — CSV export and terminal tables
==============================================

  • write_csv          one row per PositionSummary, every field, USD
                       values fixed to two decimals
  • log_summaries      per-position debug line (profit / opportunity cost)
  • aggregate          group summaries by owner or whirlpool
  • print_aggregates   grouped table + total row (Rich)
  • print_wallet_values / format_as_params   output of the ``find`` command
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from rich.console import Console
from rich.table import Table
from solders.pubkey import Pubkey

from orca_pnl.logger import abbreviate, link_address
from orca_pnl.models import ZERO, PositionSummary

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
SUMMARY_KEYS = ("owner", "whirlpool")

stdout = Console()


# ── Formatting ───────────────────────────────────────────────────────────


def format_usd(value: Decimal) -> str:
    """Two decimals, half away from zero.

    >>> format_usd(Decimal("1.005"))
    '1.01'
    """
    return str(value.quantize(CENT, rounding=ROUND_HALF_UP))


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return format_usd(value)
    return str(value)


def format_date(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def _signed(value: Decimal) -> str:
    color = "green" if value >= 0 else "red"
    return f"[{color}]${format_usd(value)}[/{color}]"


# ── CSV ──────────────────────────────────────────────────────────────────


def write_csv(summaries: Iterable[PositionSummary], path: str) -> Path:
    """Write (replacing) a CSV with one row per summary; returns the path."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        target.unlink()

    columns = PositionSummary.field_names()
    rows = 0
    with target.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(columns)
        for summary in summaries:
            writer.writerow([format_cell(getattr(summary, column)) for column in columns])
            rows += 1
    logger.info("Wrote %d rows to %s", rows, target)
    return target


# ── Per-Position Log ─────────────────────────────────────────────────────


def log_summaries(summaries: Iterable[PositionSummary]) -> None:
    for summary in summaries:
        logger.debug(
            "Position %s: profit %s, opportunity cost %s",
            link_address(summary.position),
            _signed(summary.profit),
            _signed(-summary.opportunity_cost),
        )


# ── Aggregates ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AggregateRow:
    key: Optional[Pubkey]  # None for the total row
    positions: int
    first_opened_at: int
    average_size: Decimal
    average_profitability: Decimal  # −mean opportunity cost


def _aggregate_row(key: Optional[Pubkey], group: Sequence[PositionSummary]) -> AggregateRow:
    count = len(group)
    return AggregateRow(
        key=key,
        positions=count,
        first_opened_at=min(s.opened_at for s in group),
        average_size=sum((s.position_size for s in group), ZERO) / count,
        average_profitability=-sum((s.opportunity_cost for s in group), ZERO) / count,
    )


def aggregate(summaries: Iterable[PositionSummary], key: str = "owner") -> List[AggregateRow]:
    """Group by ``owner`` or ``whirlpool``; most profitable first."""
    if key not in SUMMARY_KEYS:
        raise ValueError(f"Unknown summary key: {key}")
    groups: Dict[Pubkey, List[PositionSummary]] = {}
    for summary in summaries:
        groups.setdefault(getattr(summary, key), []).append(summary)
    rows = [_aggregate_row(k, group) for k, group in groups.items()]
    rows.sort(key=lambda row: row.average_profitability, reverse=True)
    return rows


def total_row(summaries: Sequence[PositionSummary]) -> Optional[AggregateRow]:
    return _aggregate_row(None, summaries) if summaries else None


def print_aggregates(summaries: Sequence[PositionSummary], key: str = "owner",
                     full_address: bool = False, console: Console = stdout) -> None:
    table = Table(title=f"Positions by {key}")
    table.add_column(key.capitalize())
    table.add_column("No. Positions", justify="right")
    table.add_column("First position", justify="right")
    table.add_column("Av. Size", justify="right")
    table.add_column("Av. Profitability", justify="right")

    for row in aggregate(summaries, key):
        table.add_row(
            link_address(row.key, full_address=full_address),
            str(row.positions),
            format_date(row.first_opened_at),
            f"${format_usd(row.average_size)}",
            _signed(row.average_profitability),
        )
    total = total_row(summaries)
    if total is not None:
        table.add_section()
        table.add_row(
            "Total",
            str(total.positions),
            format_date(total.first_opened_at),
            f"${format_usd(total.average_size)}",
            _signed(total.average_profitability),
        )
    console.print(table)


# ── Find Output ──────────────────────────────────────────────────────────


def print_wallet_values(values: Mapping[Pubkey, Decimal], full_address: bool = False,
                        console: Console = stdout) -> None:
    table = Table(title="Liquidity providers")
    table.add_column("Owner")
    table.add_column("Max Value", justify="right")
    for owner, value in sorted(values.items(), key=lambda item: item[1], reverse=True):
        label = str(owner) if full_address else abbreviate(str(owner))
        table.add_row(label, f"${format_usd(value)}")
    console.print(table)


def format_as_params(owners: Iterable[Pubkey]) -> str:
    """Command line that analyzes every owner found."""
    return "pnl analyze --address " + " ".join(str(owner) for owner in owners)
