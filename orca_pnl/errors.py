"""
Error Taxonomy
==============

Three scopes, matching how far a failure is allowed to spread:

  • Instruction-local — ``InstructionDecodeError``: the instruction is
    skipped, the rest of the transaction is still decoded.
  • Position-local — missing price / pool / token, malformed event
    sequence, ledger invariant, below materiality: the position is
    skipped with a logged reason, the batch continues.
  • Fatal — ``RpcConnectionError`` and ``ConfigError`` abort the run.
"""


class PnlError(Exception):
    """Base class for every error raised by this project."""


# ── Instruction-local ────────────────────────────────────────────────────


class InstructionDecodeError(PnlError):
    """An instruction could not be turned into an event."""


# ── Position-local ───────────────────────────────────────────────────────


class PositionError(PnlError):
    """A single position cannot be analyzed; others are unaffected."""


class MissingPriceError(PositionError, LookupError):
    """No USD price is resolvable for a mint at the requested time."""

    def __init__(self, mint, block_time=None):
        self.mint = mint
        self.block_time = block_time
        when = "now" if block_time is None else f"t={block_time}"
        super().__init__(f"No price for {mint} at {when}")


class MissingPoolError(PositionError, LookupError):
    """The whirlpool of a position, or one of its tick arrays, could not be loaded."""


class MissingTokenError(PositionError, LookupError):
    """Token metadata (decimals) is unknown for a mint."""


class MalformedPositionError(PositionError):
    """Event sequence violates the open/close lifecycle."""


class BelowMaterialityError(PositionError):
    """Deposited value is below the analysis threshold."""


class LedgerInvariantError(PositionError):
    """Rolling state reached an impossible value (e.g. over-withdrawal)."""


# ── Collaborators / fatal ────────────────────────────────────────────────


class RpcError(PnlError):
    """The JSON-RPC node answered with an error object."""


class RpcConnectionError(PnlError):
    """The JSON-RPC node could not be reached at all."""


class ConfigError(PnlError):
    """Required configuration is missing."""
