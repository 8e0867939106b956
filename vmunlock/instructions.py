"""Instruction builders for the VM timelock program."""

from __future__ import annotations

import struct
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.sysvar import RENT
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import create_associated_token_account, get_associated_token_address

from .constants import (
    OP_FINALIZE_UNLOCK,
    OP_INIT_UNLOCK,
    OP_WITHDRAW,
    WITHDRAW_FROM_DEPOSIT,
    WITHDRAW_FROM_MEMORY,
)


def encode_withdraw_from_memory(account_index: int) -> bytes:
    if account_index < 0 or account_index > 0xFFFF:
        raise ValueError("account_index must fit in u16")
    return bytes([OP_WITHDRAW, WITHDRAW_FROM_MEMORY]) + struct.pack("<H", account_index)


def encode_withdraw_from_deposit(bump: int) -> bytes:
    if bump < 0 or bump > 0xFF:
        raise ValueError("deposit bump must fit in u8")
    return bytes([OP_WITHDRAW, WITHDRAW_FROM_DEPOSIT, bump])


def _optional_meta(pubkey: Optional[Pubkey], program_id: Pubkey, writable: bool) -> AccountMeta:
    # Absent optional accounts are passed as the program id.
    if pubkey is None:
        return AccountMeta(program_id, False, False)
    return AccountMeta(pubkey, False, writable)


def init_unlock(
    program_id: Pubkey,
    owner: Pubkey,
    payer: Pubkey,
    vm: Pubkey,
    unlock_pda: Pubkey,
) -> Instruction:
    metas = [
        AccountMeta(owner, True, True),
        AccountMeta(payer, True, True),
        AccountMeta(vm, False, False),
        AccountMeta(unlock_pda, False, True),
        AccountMeta(SYS_PROGRAM_ID, False, False),
        AccountMeta(RENT, False, False),
    ]
    return Instruction(program_id, bytes([OP_INIT_UNLOCK]), metas)


def finalize_unlock(
    program_id: Pubkey,
    owner: Pubkey,
    payer: Pubkey,
    vm: Pubkey,
    unlock_pda: Pubkey,
) -> Instruction:
    metas = [
        AccountMeta(owner, True, True),
        AccountMeta(payer, True, True),
        AccountMeta(vm, False, False),
        AccountMeta(unlock_pda, False, True),
    ]
    return Instruction(program_id, bytes([OP_FINALIZE_UNLOCK]), metas)


def withdraw(
    program_id: Pubkey,
    owner: Pubkey,
    payer: Pubkey,
    vm: Pubkey,
    vault: Pubkey,
    unlock_pda: Pubkey,
    destination: Pubkey,
    payload: bytes,
    *,
    memory: Optional[Pubkey] = None,
    storage: Optional[Pubkey] = None,
    deposit_pda: Optional[Pubkey] = None,
    deposit_ata: Optional[Pubkey] = None,
    receipt: Optional[Pubkey] = None,
) -> Instruction:
    if not payload or payload[0] != OP_WITHDRAW:
        raise ValueError("withdraw payload must start with the withdraw opcode")
    metas: List[AccountMeta] = [
        AccountMeta(owner, True, True),
        AccountMeta(payer, True, True),
        AccountMeta(vm, False, True),
        AccountMeta(vault, False, True),
        _optional_meta(memory, program_id, True),
        _optional_meta(storage, program_id, False),
        _optional_meta(deposit_pda, program_id, False),
        _optional_meta(deposit_ata, program_id, True),
        AccountMeta(unlock_pda, False, False),
        _optional_meta(receipt, program_id, True),
        AccountMeta(destination, False, True),
        AccountMeta(TOKEN_PROGRAM_ID, False, False),
        AccountMeta(SYS_PROGRAM_ID, False, False),
        AccountMeta(RENT, False, False),
    ]
    return Instruction(program_id, payload, metas)


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)


def create_associated_account(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    return create_associated_token_account(payer=payer, owner=owner, mint=mint)


def describe_instruction(ix: Instruction) -> List[str]:
    lines = [f"Program ID: {ix.program_id}", "Accounts:"]
    for idx, meta in enumerate(ix.accounts):
        lines.append(
            f"  {idx}: {meta.pubkey} (is_signer: {str(meta.is_signer).lower()}, "
            f"is_writable: {str(meta.is_writable).lower()})"
        )
    lines.append(f"Data: {bytes(ix.data).hex()}")
    return lines
