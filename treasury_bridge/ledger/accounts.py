"""
Addresses and token-account derivation.

A token sub-account is the associated token account (ATA) of an
(owner, mint) pair. It is derived off-chain, with no lookup, from the
program-derived address of [owner, token program, mint] under the
associated-token-account program.
"""

from __future__ import annotations

from solders.pubkey import Pubkey
from solders.system_program import ID as _SYSTEM_PROGRAM
from spl.token.constants import TOKEN_2022_PROGRAM_ID as _TOKEN_2022_PROGRAM
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

SYSTEM_PROGRAM_ID = str(_SYSTEM_PROGRAM)
SPL_TOKEN_PROGRAM_ID = str(TOKEN_PROGRAM_ID)
TOKEN_2022_PROGRAM_ID = str(_TOKEN_2022_PROGRAM)

# Token programs whose transfers the JSON-RPC parser recognizes. Payments
# are only accepted through SPL_TOKEN_PROGRAM_ID.
TOKEN_PROGRAM_IDS: frozenset[str] = frozenset({SPL_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})


def parse_address(value: str, *, name: str = "address") -> Pubkey:
    """Parse a base58 address.

    Raises:
        ValueError: If ``value`` is empty or not a valid 32-byte address.
    """
    if not value:
        raise ValueError(f"{name} must be non-empty")
    try:
        return Pubkey.from_string(value)
    except Exception as exc:
        raise ValueError(f"{name} is not a valid address: {value!r}") from exc


def derive_token_account(owner: str, mint: str) -> str:
    """Associated token account of ``owner`` for ``mint``, base58."""
    ata = get_associated_token_address(
        parse_address(owner, name="owner"),
        parse_address(mint, name="mint"),
    )
    return str(ata)
