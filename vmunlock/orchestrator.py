"""Timelock unlock state machine.

The flow moves an owner's virtual timelock account through these phases:

    unverified -> verified -> {missing, waiting, unlocked} -> completed

Each run re-derives every address and re-reads on-chain state before acting,
so re-running after a crash or a failed submission resumes where the account
actually is instead of repeating work.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from . import instructions
from .config import UnlockConfig
from .constants import WITHDRAW_FROM_MEMORY
from .errors import ConfigError, InvalidUnlockState, NotFound, PdaVerificationFailed, PollCancelled
from .pda import (
    find_deposit_address,
    find_unlock_address,
    find_virtual_timelock_address,
    find_withdraw_receipt_address,
    new_instance_hash,
    verify_unlock_address,
)
from .state import StateReader, UnlockState, UnlockStateAccount
from .submit import TransactionSubmitter
from .util import format_duration, format_timestamp


class Phase(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    ACCOUNT_MISSING = "missing"
    ACCOUNT_WAITING = "waiting"
    ACCOUNT_UNLOCKED = "unlocked"
    COMPLETED = "completed"


@dataclass(frozen=True)
class DerivedAddresses:
    owner: Pubkey
    timelock: Pubkey
    timelock_bump: int
    unlock: Pubkey
    unlock_bump: int


@dataclass(frozen=True)
class PollResult:
    ready: bool
    state: UnlockState
    unlock_at: int
    current_time: Optional[int] = None

    @property
    def remaining(self) -> int:
        if self.current_time is None:
            return 0
        return max(0, self.unlock_at - self.current_time)


@dataclass
class UnlockReport:
    addresses: DerivedAddresses
    phases: List[Phase] = field(default_factory=list)
    signatures: Dict[str, str] = field(default_factory=dict)
    unlock_at: Optional[int] = None


class UnlockPoller:
    """Compares the cluster clock against ``unlock_at`` one step at a time.

    ``check`` performs a single observation and never sleeps, so callers can
    drive it from their own loop. ``wait`` is the blocking loop; it sleeps via
    the injected ``sleep`` callable, or the cancel event's ``wait`` when none
    is given, so a set event interrupts the sleep immediately.
    """

    def __init__(
        self,
        reader: StateReader,
        unlock_address: Pubkey,
        interval: float,
        *,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("poll interval must be > 0")
        self.reader = reader
        self.unlock_address = unlock_address
        self.interval = interval
        self.clock = clock or (lambda: reader.get_clock().unix_timestamp)
        self.sleep = sleep

    def check(self) -> PollResult:
        account = self.reader.get_unlock_state(self.unlock_address)
        if account.is_unlocked():
            return PollResult(ready=True, state=UnlockState.UNLOCKED, unlock_at=account.unlock_at)
        if not account.is_waiting():
            raise InvalidUnlockState(f"Invalid unlock state {account.state} at {self.unlock_address}")
        now = self.clock()
        return PollResult(
            ready=now >= account.unlock_at,
            state=UnlockState.WAITING_FOR_TIMEOUT,
            unlock_at=account.unlock_at,
            current_time=now,
        )

    def wait(self, cancel: Optional[threading.Event] = None) -> PollResult:
        cancel = cancel or threading.Event()
        sleep = self.sleep or cancel.wait
        while True:
            if cancel.is_set():
                raise PollCancelled("Unlock polling cancelled")
            result = self.check()
            if result.ready:
                return result
            print("Waiting for timelock...")
            print(f"Current time: {result.current_time} ({format_timestamp(result.current_time or 0)})")
            print(f"Unlock at: {result.unlock_at} ({format_timestamp(result.unlock_at)})")
            print(f"Remaining: {format_duration(result.remaining)}")
            sleep(self.interval)


class UnlockOrchestrator:
    def __init__(
        self,
        config: UnlockConfig,
        reader: StateReader,
        submitter: Optional[TransactionSubmitter],
        owner: Keypair,
        payer: Optional[Keypair] = None,
        *,
        sleep: Optional[Callable[[float], object]] = None,
        clock: Optional[Callable[[], int]] = None,
        instance_hash: Callable[[], bytes] = new_instance_hash,
    ) -> None:
        self.config = config
        self.reader = reader
        self.submitter = submitter
        self.owner = owner
        self.payer = payer
        self.sleep = sleep
        self.clock = clock
        self.instance_hash = instance_hash
        self.phase = Phase.UNVERIFIED

    # ── Addresses ───────────────────────────────────────────────────

    def derive(self) -> DerivedAddresses:
        cfg = self.config
        owner = self.owner.pubkey()
        timelock, timelock_bump = find_virtual_timelock_address(
            cfg.mint, cfg.vm_authority, owner, cfg.lock_duration, cfg.program_id
        )
        unlock, unlock_bump = find_unlock_address(owner, timelock, cfg.vm_state, cfg.program_id)
        return DerivedAddresses(
            owner=owner,
            timelock=timelock,
            timelock_bump=timelock_bump,
            unlock=unlock,
            unlock_bump=unlock_bump,
        )

    def verify(self, derived: DerivedAddresses) -> None:
        cfg = self.config
        verify_unlock_address(
            derived.unlock,
            owner=derived.owner,
            mint=cfg.mint,
            vm_authority=cfg.vm_authority,
            vm=cfg.vm_state,
            lock_duration=cfg.lock_duration,
            program_id=cfg.program_id,
        )
        if cfg.unlock_address is not None and cfg.unlock_address != derived.unlock:
            raise PdaVerificationFailed(
                f"unlock.address {cfg.unlock_address} does not match derived unlock address "
                f"{derived.unlock}; remove unlock.address or fix the vm settings"
            )
        self.phase = Phase.VERIFIED

    def _check_binding(self, account: UnlockStateAccount, derived: DerivedAddresses) -> None:
        mismatched = []
        if account.owner != derived.owner:
            mismatched.append("owner")
        if account.address != derived.timelock:
            mismatched.append("timelock address")
        if account.vm != self.config.vm_state:
            mismatched.append("vm")
        if mismatched:
            raise PdaVerificationFailed(
                f"unlock account {derived.unlock} has unexpected {', '.join(mismatched)}"
            )

    # ── State inspection ───────────────────────────────────────────

    def inspect(self, derived: DerivedAddresses) -> Tuple[Phase, Optional[UnlockStateAccount]]:
        try:
            account = self.reader.get_unlock_state(derived.unlock)
        except NotFound:
            self.phase = Phase.ACCOUNT_MISSING
            return self.phase, None
        self._check_binding(account, derived)
        if account.is_unlocked():
            self.phase = Phase.ACCOUNT_UNLOCKED
        elif account.is_waiting():
            self.phase = Phase.ACCOUNT_WAITING
        else:
            raise InvalidUnlockState(f"Invalid unlock state {account.state} at {derived.unlock}")
        return self.phase, account

    # ── Transitions ────────────────────────────────────────────────

    def _require_payer(self) -> Keypair:
        if self.payer is None or self.submitter is None:
            raise ConfigError("a payer keypair is required to submit transactions")
        return self.payer

    def _submit(self, ix) -> str:
        payer = self._require_payer()
        return self.submitter.submit([ix], [payer, self.owner])

    def initialize(self, derived: DerivedAddresses) -> str:
        cfg = self.config
        payer = self._require_payer()
        ix = instructions.init_unlock(cfg.program_id, derived.owner, payer.pubkey(), cfg.vm_state, derived.unlock)
        print("Instruction Data:")
        for line in instructions.describe_instruction(ix):
            print(line)
        print(f"Derived Unlock PDA: {derived.unlock}")
        sig = self._submit(ix)
        print(f"Unlock transaction successful! Signature: {sig}")
        self.phase = Phase.ACCOUNT_WAITING
        return sig

    def poller(self, derived: DerivedAddresses) -> UnlockPoller:
        return UnlockPoller(
            self.reader,
            derived.unlock,
            self.config.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
        )

    def finalize(self, derived: DerivedAddresses) -> str:
        cfg = self.config
        payer = self._require_payer()
        ix = instructions.finalize_unlock(
            cfg.program_id, derived.owner, payer.pubkey(), cfg.vm_state, derived.unlock
        )
        sig = self._submit(ix)
        print(f"Finalize unlock transaction successful! Signature: {sig}")
        self.phase = Phase.ACCOUNT_UNLOCKED
        return sig

    def wait_for_unlock(self, derived: DerivedAddresses, cancel: Optional[threading.Event] = None) -> Optional[str]:
        result = self.poller(derived).wait(cancel)
        if result.state == UnlockState.UNLOCKED:
            print("Account is already unlocked!")
            self.phase = Phase.ACCOUNT_UNLOCKED
            return None
        print("Timelock duration has passed, proceeding with finalization")
        return self.finalize(derived)

    def ensure_destination(self) -> Tuple[Pubkey, Optional[str]]:
        owner = self.owner.pubkey()
        destination = instructions.associated_token_address(owner, self.config.mint)
        if self.reader.account_exists(destination):
            return destination, None
        payer = self._require_payer()
        print(f"Creating associated token account {destination}")
        ix = instructions.create_associated_account(payer.pubkey(), owner, self.config.mint)
        sig = self.submitter.submit([ix], [payer])
        print(f"Associated token account created. Signature: {sig}")
        return destination, sig

    def _withdraw_payload(self, derived: DerivedAddresses) -> Tuple[bytes, Dict[str, Pubkey]]:
        cfg = self.config
        settings = cfg.withdraw
        if settings.mode_code == WITHDRAW_FROM_MEMORY:
            if settings.memory_account is None or settings.memory_index is None:
                raise ConfigError("withdraw mode 'memory' requires withdraw.memory_account and withdraw.memory_index")
            extra = {"memory": settings.memory_account}
            if settings.storage_account is not None:
                extra["storage"] = settings.storage_account
            return instructions.encode_withdraw_from_memory(settings.memory_index), extra
        deposit_pda, bump = find_deposit_address(derived.owner, cfg.vm_state, cfg.program_id)
        if settings.deposit_bump is not None and settings.deposit_bump != bump:
            raise PdaVerificationFailed(
                f"withdraw.deposit_bump {settings.deposit_bump} does not match derived bump {bump}"
            )
        extra = {
            "deposit_pda": deposit_pda,
            "deposit_ata": instructions.associated_token_address(deposit_pda, cfg.mint),
        }
        return instructions.encode_withdraw_from_deposit(bump), extra

    def withdraw(self, derived: DerivedAddresses) -> Dict[str, str]:
        cfg = self.config
        payer = self._require_payer()
        vm_state = self.reader.get_vm_state(cfg.vm_state)
        if vm_state.mint != cfg.mint:
            raise ConfigError(f"vm_state mint {vm_state.mint} does not match configured mint {cfg.mint}")
        if vm_state.lock_duration != cfg.lock_duration:
            raise ConfigError(
                f"vm_state lock duration {vm_state.lock_duration} does not match configured {cfg.lock_duration}"
            )
        signatures: Dict[str, str] = {}
        destination, ata_sig = self.ensure_destination()
        if ata_sig:
            signatures["create_associated_account"] = ata_sig

        payload, extra = self._withdraw_payload(derived)
        receipt, _ = find_withdraw_receipt_address(derived.unlock, self.instance_hash(), cfg.vm_state, cfg.program_id)
        ix = instructions.withdraw(
            cfg.program_id,
            derived.owner,
            payer.pubkey(),
            cfg.vm_state,
            vm_state.omnibus_vault,
            derived.unlock,
            destination,
            payload,
            receipt=receipt,
            **extra,
        )
        sig = self._submit(ix)
        print(f"Withdraw transaction successful! Signature: {sig}")
        signatures["withdraw"] = sig
        self.phase = Phase.COMPLETED
        return signatures

    # ── Entry points ───────────────────────────────────────────────

    def status(self) -> Tuple[DerivedAddresses, Phase, Optional[UnlockStateAccount]]:
        self.phase = Phase.UNVERIFIED
        derived = self.derive()
        self.verify(derived)
        phase, account = self.inspect(derived)
        return derived, phase, account

    def run(self, cancel: Optional[threading.Event] = None, withdraw: bool = True) -> UnlockReport:
        self.phase = Phase.UNVERIFIED
        derived = self.derive()
        report = UnlockReport(addresses=derived, phases=[self.phase])
        self.verify(derived)
        report.phases.append(self.phase)
        print("PDA verification passed, checking unlock status...")

        phase, account = self.inspect(derived)
        report.phases.append(phase)
        if account is not None:
            report.unlock_at = account.unlock_at

        if phase == Phase.ACCOUNT_MISSING:
            print("Initializing new unlock...")
            report.signatures["init_unlock"] = self.initialize(derived)
            report.phases.append(self.phase)
            print("Unlock initialized, waiting for timelock duration...")
        elif phase == Phase.ACCOUNT_WAITING:
            print("Unlock account already initialized, proceeding to wait for unlock")

        if self.phase == Phase.ACCOUNT_WAITING:
            sig = self.wait_for_unlock(derived, cancel)
            if sig:
                report.signatures["finalize_unlock"] = sig
            report.phases.append(self.phase)
        else:
            print("Unlock account already unlocked, skipping to withdrawal")

        if withdraw:
            report.signatures.update(self.withdraw(derived))
            report.phases.append(self.phase)
        print("Unlock process completed successfully!")
        return report
