"""
Outbound transfer builder.

Builds the instruction list for a treasury → payer token payout. This is
the "transaction recipe": pure, deterministic, no secrets, no network
calls. The blockhash and signature are submit-time concerns and are NOT
included here.

The builder enforces:
    - Exactly one transferChecked instruction, treasury-owned source.
    - Missing associated token accounts are created first, paid by the
      treasury.
    - Amount is a positive integer of smallest units.
"""

from __future__ import annotations

import decimal
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from solders.instruction import Instruction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    transfer_checked,
)

from treasury_bridge.ledger.accounts import derive_token_account, parse_address


def to_smallest_units(amount: Decimal, decimals: int) -> int:
    """Convert a human amount to smallest units, truncating the remainder.

    Uses a widened decimal context so the scaling itself is exact for any
    realistic amount and precision.
    """
    with decimal.localcontext() as ctx:
        ctx.prec = 60
        scaled = amount.scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


@dataclass(frozen=True)
class PayoutPlan:
    """Instructions and accounts for one payout.

    Attributes:
        instructions: Ordered instructions (account creations, then transfer).
        source_account: Treasury token account the tokens leave from.
        destination_account: Payer token account the tokens arrive in.
        created_accounts: Accounts the instructions create.
        units: Smallest units transferred.
    """

    instructions: tuple[Instruction, ...]
    source_account: str
    destination_account: str
    created_accounts: tuple[str, ...]
    units: int


def plan_token_payout(
    *,
    treasury: str,
    recipient: str,
    mint: str,
    decimals: int,
    units: int,
    create_source: bool = False,
    create_destination: bool = False,
) -> PayoutPlan:
    """Build the instructions for a treasury → recipient token transfer.

    Args:
        treasury: Treasury address (fee payer, source owner, rent payer).
        recipient: Recipient wallet address.
        mint: Output token mint.
        decimals: Output token precision, checked on-chain by transferChecked.
        units: Amount in smallest units.
        create_source: Prepend creation of the treasury's token account.
        create_destination: Prepend creation of the recipient's token account.

    Raises:
        ValueError: If ``units`` is not positive or an address is malformed.
    """
    if units <= 0:
        raise ValueError(f"units must be positive, got: {units}")

    treasury_pk = parse_address(treasury, name="treasury")
    recipient_pk = parse_address(recipient, name="recipient")
    mint_pk = parse_address(mint, name="mint")

    source = derive_token_account(treasury, mint)
    destination = derive_token_account(recipient, mint)

    instructions: list[Instruction] = []
    created: list[str] = []
    if create_source:
        instructions.append(create_associated_token_account(treasury_pk, treasury_pk, mint_pk))
        created.append(source)
    if create_destination and destination != source:
        instructions.append(create_associated_token_account(treasury_pk, recipient_pk, mint_pk))
        created.append(destination)

    instructions.append(transfer_checked(TransferCheckedParams(
        program_id=TOKEN_PROGRAM_ID,
        source=parse_address(source),
        mint=mint_pk,
        dest=parse_address(destination),
        owner=treasury_pk,
        amount=units,
        decimals=decimals,
    )))

    return PayoutPlan(
        instructions=tuple(instructions),
        source_account=source,
        destination_account=destination,
        created_accounts=tuple(created),
        units=units,
    )


def plan_account_creation(
    *,
    payer: str,
    owner: str,
    mints: list[str],
) -> tuple[tuple[Instruction, ...], tuple[str, ...]]:
    """Instructions creating ``owner``'s token accounts for ``mints``.

    Args:
        payer: Fee and rent payer (the signing treasury).
        owner: Wallet that will own the accounts (the receiving address).
        mints: Mints to create accounts for.

    Returns:
        (instructions, accounts) in matching order.
    """
    payer_pk = parse_address(payer, name="payer")
    owner_pk = parse_address(owner, name="owner")
    instructions: list[Instruction] = []
    accounts: list[str] = []
    for mint in mints:
        instructions.append(
            create_associated_token_account(
                payer_pk, owner_pk, parse_address(mint, name="mint")
            )
        )
        accounts.append(derive_token_account(owner, mint))
    return tuple(instructions), tuple(accounts)
