"""Program-derived address helpers for the VM timelock accounts.

Every address the unlock flow touches is derived here from fixed seed tags and
public keys. The seed order must match the VM program exactly; a single
reordered seed yields a different address and the program rejects the
instruction.
"""

from __future__ import annotations

import secrets
from typing import List, Sequence, Tuple

from solders.pubkey import Pubkey

from .constants import (
    MAX_SEED_LEN,
    MAX_SEEDS,
    SEED_CODE_VM,
    SEED_DEPOSIT,
    SEED_TIMELOCK_STATE,
    SEED_UNLOCK,
    SEED_WITHDRAW_RECEIPT,
)
from .errors import DerivationExhausted, PdaVerificationFailed

INSTANCE_HASH_SIZE = 32


def _check_seeds(seeds: Sequence[bytes]) -> None:
    # One slot is reserved for the bump byte.
    if len(seeds) > MAX_SEEDS - 1:
        raise DerivationExhausted(f"too many seeds ({len(seeds)}); at most {MAX_SEEDS - 1} allowed")
    for idx, seed in enumerate(seeds):
        if len(seed) > MAX_SEED_LEN:
            raise DerivationExhausted(f"seed {idx} is {len(seed)} bytes; max is {MAX_SEED_LEN}")


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    _check_seeds(seeds)
    try:
        address, bump = Pubkey.find_program_address(list(seeds), program_id)
    except ValueError as exc:
        raise DerivationExhausted(f"no viable bump seed found: {exc}") from exc
    return address, bump


def timelock_seeds(mint: Pubkey, vm_authority: Pubkey, owner: Pubkey, lock_duration: int) -> List[bytes]:
    if lock_duration < 0 or lock_duration > 0xFF:
        raise ValueError("lock_duration must fit in u8")
    return [
        SEED_TIMELOCK_STATE,
        bytes(mint),
        bytes(vm_authority),
        bytes(owner),
        bytes([lock_duration]),
    ]


def unlock_seeds(owner: Pubkey, timelock: Pubkey, vm: Pubkey) -> List[bytes]:
    return [SEED_CODE_VM, SEED_UNLOCK, bytes(owner), bytes(timelock), bytes(vm)]


def withdraw_receipt_seeds(unlock: Pubkey, instance_hash: bytes, vm: Pubkey) -> List[bytes]:
    if len(instance_hash) != INSTANCE_HASH_SIZE:
        raise ValueError(f"instance hash must be {INSTANCE_HASH_SIZE} bytes")
    return [SEED_CODE_VM, SEED_WITHDRAW_RECEIPT, bytes(unlock), bytes(instance_hash), bytes(vm)]


def deposit_seeds(depositor: Pubkey, vm: Pubkey) -> List[bytes]:
    return [SEED_CODE_VM, SEED_DEPOSIT, bytes(depositor), bytes(vm)]


def find_virtual_timelock_address(
    mint: Pubkey,
    vm_authority: Pubkey,
    owner: Pubkey,
    lock_duration: int,
    program_id: Pubkey,
) -> Tuple[Pubkey, int]:
    return find_program_address(timelock_seeds(mint, vm_authority, owner, lock_duration), program_id)


def find_unlock_address(owner: Pubkey, timelock: Pubkey, vm: Pubkey, program_id: Pubkey) -> Tuple[Pubkey, int]:
    return find_program_address(unlock_seeds(owner, timelock, vm), program_id)


def find_withdraw_receipt_address(
    unlock: Pubkey,
    instance_hash: bytes,
    vm: Pubkey,
    program_id: Pubkey,
) -> Tuple[Pubkey, int]:
    return find_program_address(withdraw_receipt_seeds(unlock, instance_hash, vm), program_id)


def find_deposit_address(depositor: Pubkey, vm: Pubkey, program_id: Pubkey) -> Tuple[Pubkey, int]:
    return find_program_address(deposit_seeds(depositor, vm), program_id)


def verify_address(candidate: Pubkey, seeds: Sequence[bytes], program_id: Pubkey, label: str) -> int:
    """Recompute an address from raw seeds and compare it with ``candidate``.

    Returns the bump on success.
    """
    expected, bump = find_program_address(seeds, program_id)
    if expected != candidate:
        raise PdaVerificationFailed(
            f"{label} {candidate} does not match derived address {expected}; "
            "check program_id, mint, vm_state and vm_authority"
        )
    return bump


def verify_unlock_address(
    candidate: Pubkey,
    *,
    owner: Pubkey,
    mint: Pubkey,
    vm_authority: Pubkey,
    vm: Pubkey,
    lock_duration: int,
    program_id: Pubkey,
) -> int:
    timelock, _ = find_virtual_timelock_address(mint, vm_authority, owner, lock_duration, program_id)
    return verify_address(candidate, unlock_seeds(owner, timelock, vm), program_id, "unlock address")


def new_instance_hash() -> bytes:
    return secrets.token_bytes(INSTANCE_HASH_SIZE)
