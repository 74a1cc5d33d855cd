"""
Logging — Rich console handler and address links
=================================================

One logger hierarchy (``orca_pnl.*`` plus the root-level engine modules)
rendered through ``rich.logging.RichHandler``.  Addresses are shown as
solscan hyperlinks (OSC-8 via Rich markup), abbreviated unless the user
asks for full addresses.

Levels:
  --debug → DEBUG   (per-position PnL lines, skipped instructions)
  default → INFO
  --quiet → ERROR
"""

import logging
from typing import Iterable, Union

from rich.console import Console
from rich.logging import RichHandler
from solders.pubkey import Pubkey

SOLSCAN_ACCOUNT_URL = "https://solscan.io/account/{address}"
SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"

# Beyond this many addresses a message shows a count instead
MAX_LINKED_ADDRESSES = 3

console = Console(stderr=True)

_full_address = False


def configure_logging(quiet: bool = False, debug: bool = False,
                      full_address: bool = False) -> None:
    """Install the Rich handler on the root logger (idempotent)."""
    global _full_address
    _full_address = full_address

    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(
        RichHandler(
            console=console,
            markup=True,
            show_path=debug,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
    )
    root.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def abbreviate(address: str) -> str:
    """``whirLbMi…`` style shortening: first and last four characters."""
    if len(address) <= 11:
        return address
    return f"{address[:4]}...{address[-4:]}"


def link_address(addresses: Union[Pubkey, str, Iterable[Union[Pubkey, str]]],
                 full_address: bool = None) -> str:
    """Rich-markup link(s) to solscan for one or several addresses.

    >>> link_address([])
    'no addresses'
    """
    if isinstance(addresses, (Pubkey, str)):
        addresses = [addresses]
    items = [str(a) for a in addresses]
    if full_address is None:
        full_address = _full_address

    if not items:
        return "no addresses"
    if len(items) > MAX_LINKED_ADDRESSES:
        return f"{len(items)} addresses"

    links = []
    for address in items:
        text = address if full_address else abbreviate(address)
        url = SOLSCAN_ACCOUNT_URL.format(address=address)
        links.append(f"[link={url}]{text}[/link]")

    if len(links) == 1:
        return links[0]
    return ", ".join(links[:-1]) + " and " + links[-1]
