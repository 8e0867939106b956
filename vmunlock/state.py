"""Fetch and decode VM accounts from the cluster."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK

from .constants import (
    ACCOUNT_CODE_VM,
    ACCOUNT_UNLOCK_STATE,
    CLOCK_ACCOUNT_SIZE,
    CLOCK_UNIX_TIMESTAMP_OFFSET,
    UNLOCK_ACCOUNT_SIZE,
    UNLOCK_ADDRESS_OFFSET,
    UNLOCK_AT_OFFSET,
    UNLOCK_BUMP_OFFSET,
    UNLOCK_OWNER_OFFSET,
    UNLOCK_STATE_OFFSET,
    UNLOCK_VM_OFFSET,
    VM_ACCOUNT_SIZE,
    VM_AUTHORITY_OFFSET,
    VM_BUMP_OFFSET,
    VM_LOCK_DURATION_OFFSET,
    VM_MINT_OFFSET,
    VM_OMNIBUS_BUMP_OFFSET,
    VM_OMNIBUS_VAULT_OFFSET,
    VM_POH_OFFSET,
    VM_SLOT_OFFSET,
)
from .errors import CorruptAccount, NotFound, TransportError


class UnlockState(IntEnum):
    UNKNOWN = 0
    UNLOCKED = 1
    WAITING_FOR_TIMEOUT = 2


@dataclass(frozen=True)
class UnlockStateAccount:
    vm: Pubkey
    owner: Pubkey
    address: Pubkey
    unlock_at: int
    bump: int
    state: int

    def is_waiting(self) -> bool:
        return self.state == UnlockState.WAITING_FOR_TIMEOUT

    def is_unlocked(self) -> bool:
        return self.state == UnlockState.UNLOCKED


@dataclass(frozen=True)
class VmState:
    authority: Pubkey
    mint: Pubkey
    slot: int
    poh: bytes
    omnibus_vault: Pubkey
    omnibus_bump: int
    lock_duration: int
    bump: int


@dataclass(frozen=True)
class ClockState:
    slot: int
    epoch_start_timestamp: int
    epoch: int
    leader_schedule_epoch: int
    unix_timestamp: int


def _pubkey_at(data: bytes, offset: int) -> Pubkey:
    return Pubkey(data[offset : offset + 32])


def _check_header(data: bytes, size: int, discriminator: int, label: str) -> None:
    if len(data) != size:
        raise CorruptAccount(f"{label} account is {len(data)} bytes; expected {size}")
    if data[0] != discriminator:
        raise CorruptAccount(f"{label} account discriminator {data[0]} does not match {discriminator}")


def decode_unlock_state(data: bytes) -> UnlockStateAccount:
    _check_header(data, UNLOCK_ACCOUNT_SIZE, ACCOUNT_UNLOCK_STATE, "unlock state")
    (unlock_at,) = struct.unpack_from("<q", data, UNLOCK_AT_OFFSET)
    return UnlockStateAccount(
        vm=_pubkey_at(data, UNLOCK_VM_OFFSET),
        owner=_pubkey_at(data, UNLOCK_OWNER_OFFSET),
        address=_pubkey_at(data, UNLOCK_ADDRESS_OFFSET),
        unlock_at=unlock_at,
        bump=data[UNLOCK_BUMP_OFFSET],
        state=data[UNLOCK_STATE_OFFSET],
    )


def decode_vm_state(data: bytes) -> VmState:
    _check_header(data, VM_ACCOUNT_SIZE, ACCOUNT_CODE_VM, "vm state")
    (slot,) = struct.unpack_from("<Q", data, VM_SLOT_OFFSET)
    return VmState(
        authority=_pubkey_at(data, VM_AUTHORITY_OFFSET),
        mint=_pubkey_at(data, VM_MINT_OFFSET),
        slot=slot,
        poh=bytes(data[VM_POH_OFFSET : VM_POH_OFFSET + 32]),
        omnibus_vault=_pubkey_at(data, VM_OMNIBUS_VAULT_OFFSET),
        omnibus_bump=data[VM_OMNIBUS_BUMP_OFFSET],
        lock_duration=data[VM_LOCK_DURATION_OFFSET],
        bump=data[VM_BUMP_OFFSET],
    )


def decode_clock(data: bytes) -> ClockState:
    if len(data) < CLOCK_ACCOUNT_SIZE:
        raise CorruptAccount(f"clock sysvar is {len(data)} bytes; expected {CLOCK_ACCOUNT_SIZE}")
    slot, epoch_start, epoch, leader_epoch = struct.unpack_from("<QqQQ", data, 0)
    (unix_timestamp,) = struct.unpack_from("<q", data, CLOCK_UNIX_TIMESTAMP_OFFSET)
    return ClockState(
        slot=slot,
        epoch_start_timestamp=epoch_start,
        epoch=epoch,
        leader_schedule_epoch=leader_epoch,
        unix_timestamp=unix_timestamp,
    )


class StateReader:
    """Reads raw account data through a solana-py client and decodes it."""

    def __init__(self, client: Client, commitment: str | None = None) -> None:
        self.client = client
        self.commitment = commitment

    def fetch_raw(self, address: Pubkey) -> bytes:
        try:
            resp = self.client.get_account_info(address, commitment=self.commitment, encoding="base64")
        except SolanaRpcException as exc:
            raise TransportError(f"RPC transport error fetching {address}: {exc}") from exc
        except RPCException as exc:
            raise TransportError(f"RPC error fetching {address}: {exc}") from exc
        info = resp.value
        if info is None:
            raise NotFound(str(address))
        return bytes(info.data)

    def account_exists(self, address: Pubkey) -> bool:
        try:
            self.fetch_raw(address)
        except NotFound:
            return False
        return True

    def get_unlock_state(self, address: Pubkey) -> UnlockStateAccount:
        return decode_unlock_state(self.fetch_raw(address))

    def get_vm_state(self, address: Pubkey) -> VmState:
        return decode_vm_state(self.fetch_raw(address))

    def get_clock(self) -> ClockState:
        return decode_clock(self.fetch_raw(CLOCK))
