import io
import threading
import unittest
from contextlib import redirect_stdout
from typing import Dict, List, Optional
from unittest.mock import PropertyMock, patch

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from vmunlock.config import UnlockConfig, WithdrawSettings
from vmunlock.constants import OP_FINALIZE_UNLOCK, OP_INIT_UNLOCK, OP_WITHDRAW, WITHDRAW_FROM_DEPOSIT
from vmunlock.errors import ConfigError, InvalidUnlockState, NotFound, PdaVerificationFailed, PollCancelled
from vmunlock.instructions import associated_token_address
from vmunlock.orchestrator import Phase, UnlockOrchestrator, UnlockPoller
from vmunlock.pda import find_deposit_address, find_withdraw_receipt_address
from vmunlock.state import ClockState, UnlockState, UnlockStateAccount, VmState

VAULT = Pubkey(bytes([11] * 32))
MEMORY = Pubkey(bytes([12] * 32))
UNLOCK_AT = 1_700_000_000
ASSOCIATED_TOKEN_PROGRAM = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")


class FakeReader:
    def __init__(self, config: UnlockConfig, clock: List[int]) -> None:
        self.config = config
        self.unlock: Dict[Pubkey, UnlockStateAccount] = {}
        self.existing: set = set()
        self.clock = list(clock)
        self.clock_reads = 0

    def get_unlock_state(self, address: Pubkey) -> UnlockStateAccount:
        if address not in self.unlock:
            raise NotFound(str(address))
        return self.unlock[address]

    def get_vm_state(self, address: Pubkey) -> VmState:
        return VmState(
            authority=self.config.vm_authority,
            mint=self.config.mint,
            slot=1,
            poh=bytes(32),
            omnibus_vault=VAULT,
            omnibus_bump=255,
            lock_duration=self.config.lock_duration,
            bump=254,
        )

    def get_clock(self) -> ClockState:
        value = self.clock[min(self.clock_reads, len(self.clock) - 1)]
        self.clock_reads += 1
        return ClockState(slot=0, epoch_start_timestamp=0, epoch=0, leader_schedule_epoch=0, unix_timestamp=value)

    def account_exists(self, address: Pubkey) -> bool:
        return address in self.existing

    def set_state(self, address: Pubkey, owner: Pubkey, timelock: Pubkey, state: int) -> None:
        self.unlock[address] = UnlockStateAccount(
            vm=self.config.vm_state,
            owner=owner,
            address=timelock,
            unlock_at=UNLOCK_AT,
            bump=255,
            state=state,
        )


class FakeSubmitter:
    """Applies each instruction's effect to the fake reader."""

    def __init__(self, reader: FakeReader) -> None:
        self.reader = reader
        self.sent: List[tuple] = []

    def submit(self, instructions, signers) -> str:
        ix = instructions[0]
        data = bytes(ix.data)
        self.sent.append((data, [s.pubkey() for s in signers], ix))
        if ix.program_id == ASSOCIATED_TOKEN_PROGRAM:
            self.reader.existing.add(ix.accounts[1].pubkey)
            return f"sig{len(self.sent)}"
        owner = ix.accounts[0].pubkey
        if data[0] == OP_INIT_UNLOCK:
            unlock = ix.accounts[3].pubkey
            self.reader.set_state(unlock, owner, self.timelock, UnlockState.WAITING_FOR_TIMEOUT)
        elif data[0] == OP_FINALIZE_UNLOCK:
            unlock = ix.accounts[3].pubkey
            self.reader.set_state(unlock, owner, self.timelock, UnlockState.UNLOCKED)
        return f"sig{len(self.sent)}"

    def opcodes(self) -> List[int]:
        return [data[0] for data, _, ix in self.sent if ix.program_id != ASSOCIATED_TOKEN_PROGRAM]


class OrchestratorTests(unittest.TestCase):
    def _make(
        self,
        clock: List[int],
        withdraw: Optional[WithdrawSettings] = None,
        **config_overrides: object,
    ) -> UnlockOrchestrator:
        config = UnlockConfig(
            poll_interval=60.0,
            withdraw=withdraw or WithdrawSettings(mode="memory", memory_account=MEMORY, memory_index=4),
            **config_overrides,
        )
        self.owner = Keypair.from_seed(bytes([1] * 32))
        self.payer = Keypair.from_seed(bytes([2] * 32))
        self.reader = FakeReader(config, clock)
        self.submitter = FakeSubmitter(self.reader)
        self.sleeps: List[float] = []
        orchestrator = UnlockOrchestrator(
            config,
            self.reader,
            self.submitter,
            self.owner,
            self.payer,
            sleep=self.sleeps.append,
            instance_hash=lambda: bytes([9] * 32),
        )
        self.derived = orchestrator.derive()
        self.submitter.timelock = self.derived.timelock
        return orchestrator

    def _run(self, orchestrator: UnlockOrchestrator, **kwargs):
        out = io.StringIO()
        with redirect_stdout(out):
            report = orchestrator.run(**kwargs)
        return report, out.getvalue()

    def test_missing_account_initializes_then_polls(self) -> None:
        orchestrator = self._make(clock=[UNLOCK_AT - 1, UNLOCK_AT])
        report, output = self._run(orchestrator)
        self.assertEqual(self.submitter.opcodes(), [OP_INIT_UNLOCK, OP_FINALIZE_UNLOCK, OP_WITHDRAW])
        self.assertEqual(self.sleeps, [60.0])
        self.assertIn("Initializing new unlock...", output)
        self.assertEqual(
            report.phases,
            [
                Phase.UNVERIFIED,
                Phase.VERIFIED,
                Phase.ACCOUNT_MISSING,
                Phase.ACCOUNT_WAITING,
                Phase.ACCOUNT_UNLOCKED,
                Phase.COMPLETED,
            ],
        )
        self.assertEqual(set(report.signatures), {"init_unlock", "finalize_unlock", "create_associated_account", "withdraw"})

    def test_all_submissions_signed_by_owner_and_payer(self) -> None:
        orchestrator = self._make(clock=[UNLOCK_AT])
        self._run(orchestrator)
        for data, signers, ix in self.submitter.sent:
            if ix.program_id == ASSOCIATED_TOKEN_PROGRAM:
                self.assertEqual(signers, [self.payer.pubkey()])
            else:
                self.assertEqual(signers, [self.payer.pubkey(), self.owner.pubkey()])

    def test_waiting_account_before_deadline_sleeps(self) -> None:
        orchestrator = self._make(clock=[UNLOCK_AT - 1, UNLOCK_AT - 1, UNLOCK_AT])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.WAITING_FOR_TIMEOUT)
        self._run(orchestrator, withdraw=False)
        self.assertEqual(self.submitter.opcodes(), [OP_FINALIZE_UNLOCK])
        self.assertEqual(self.sleeps, [60.0, 60.0])

    def test_waiting_account_at_deadline_finalizes_without_sleeping(self) -> None:
        orchestrator = self._make(clock=[UNLOCK_AT])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.WAITING_FOR_TIMEOUT)
        report, _ = self._run(orchestrator, withdraw=False)
        self.assertEqual(self.submitter.opcodes(), [OP_FINALIZE_UNLOCK])
        self.assertEqual(self.sleeps, [])
        self.assertEqual(report.unlock_at, UNLOCK_AT)
        self.assertEqual(orchestrator.phase, Phase.ACCOUNT_UNLOCKED)

    def test_unlocked_account_skips_to_withdraw(self) -> None:
        orchestrator = self._make(clock=[0])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        self.reader.existing.add(associated_token_address(self.derived.owner, orchestrator.config.mint))
        self._run(orchestrator)
        self.assertEqual(self.submitter.opcodes(), [OP_WITHDRAW])
        self.assertEqual(len(self.submitter.sent), 1)
        self.assertEqual(self.reader.clock_reads, 0)
        self.assertEqual(orchestrator.phase, Phase.COMPLETED)

    def test_second_run_does_not_reinitialize(self) -> None:
        orchestrator = self._make(clock=[UNLOCK_AT])
        self._run(orchestrator, withdraw=False)
        self.assertEqual(self.submitter.opcodes(), [OP_INIT_UNLOCK, OP_FINALIZE_UNLOCK])
        self._run(orchestrator)
        self.assertEqual(self.submitter.opcodes(), [OP_INIT_UNLOCK, OP_FINALIZE_UNLOCK, OP_WITHDRAW])

    def test_invalid_state_is_fatal(self) -> None:
        orchestrator = self._make(clock=[0])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNKNOWN)
        with self.assertRaises(InvalidUnlockState):
            self._run(orchestrator)
        self.assertEqual(self.submitter.sent, [])

    def test_state_byte_one_is_unlocked_and_three_is_invalid(self) -> None:
        orchestrator = self._make(clock=[0])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, 1)
        self.reader.existing.add(associated_token_address(self.derived.owner, orchestrator.config.mint))
        self._run(orchestrator)
        self.assertEqual(self.submitter.opcodes(), [OP_WITHDRAW])

        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, 3)
        with self.assertRaises(InvalidUnlockState):
            self._run(orchestrator)
        self.assertEqual(self.submitter.opcodes(), [OP_WITHDRAW])

    def test_account_bound_to_other_owner_is_rejected(self) -> None:
        orchestrator = self._make(clock=[0])
        stranger = Pubkey(bytes([5] * 32))
        self.reader.set_state(self.derived.unlock, stranger, self.derived.timelock, UnlockState.WAITING_FOR_TIMEOUT)
        with self.assertRaisesRegex(PdaVerificationFailed, "owner"):
            self._run(orchestrator)

    def test_pinned_unlock_address_mismatch(self) -> None:
        orchestrator = self._make(clock=[0], unlock_address=Pubkey(bytes([5] * 32)))
        with self.assertRaises(PdaVerificationFailed):
            self._run(orchestrator)
        self.assertEqual(self.submitter.sent, [])

    def test_read_only_orchestrator_refuses_to_sign(self) -> None:
        self._make(clock=[0])
        read_only = UnlockOrchestrator(self.reader.config, self.reader, None, self.owner)
        derived, phase, _ = read_only.status()
        self.assertEqual(phase, Phase.ACCOUNT_MISSING)
        with self.assertRaisesRegex(ConfigError, "payer"):
            read_only.initialize(derived)
        self.assertEqual(self.submitter.sent, [])

    def test_pinned_unlock_address_match(self) -> None:
        orchestrator = self._make(clock=[0])
        pinned = self._make(clock=[0], unlock_address=self.derived.unlock)
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        derived, phase, account = pinned.status()
        self.assertEqual(derived.unlock, orchestrator.derive().unlock)
        self.assertEqual(phase, Phase.ACCOUNT_UNLOCKED)
        self.assertIsNotNone(account)

    def test_withdraw_memory_layout(self) -> None:
        orchestrator = self._make(clock=[0])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        self._run(orchestrator)
        ata_ix = self.submitter.sent[0][2]
        withdraw_ix = self.submitter.sent[1][2]
        destination = associated_token_address(self.derived.owner, orchestrator.config.mint)
        self.assertEqual(ata_ix.accounts[1].pubkey, destination)
        self.assertEqual(bytes(withdraw_ix.data), bytes([OP_WITHDRAW, 0, 4, 0]))
        receipt, _ = find_withdraw_receipt_address(
            self.derived.unlock, bytes([9] * 32), orchestrator.config.vm_state, orchestrator.config.program_id
        )
        keys = [meta.pubkey for meta in withdraw_ix.accounts]
        self.assertEqual(keys[3], VAULT)
        self.assertEqual(keys[4], MEMORY)
        self.assertEqual(keys[8], self.derived.unlock)
        self.assertEqual(keys[9], receipt)
        self.assertEqual(keys[10], destination)

    def test_withdraw_deposit_mode(self) -> None:
        orchestrator = self._make(clock=[0], withdraw=WithdrawSettings(mode="deposit"))
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        self._run(orchestrator)
        withdraw_ix = self.submitter.sent[-1][2]
        deposit, bump = find_deposit_address(
            self.derived.owner, orchestrator.config.vm_state, orchestrator.config.program_id
        )
        self.assertEqual(bytes(withdraw_ix.data), bytes([OP_WITHDRAW, 2, bump]))
        self.assertEqual(withdraw_ix.accounts[6].pubkey, deposit)
        self.assertEqual(withdraw_ix.accounts[7].pubkey, associated_token_address(deposit, orchestrator.config.mint))

    def test_withdraw_payload_follows_mode_code(self) -> None:
        orchestrator = self._make(clock=[0])
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        with patch.object(WithdrawSettings, "mode_code", new_callable=PropertyMock, return_value=WITHDRAW_FROM_DEPOSIT):
            self._run(orchestrator)
        withdraw_ix = self.submitter.sent[-1][2]
        _, bump = find_deposit_address(self.derived.owner, orchestrator.config.vm_state, orchestrator.config.program_id)
        self.assertEqual(bytes(withdraw_ix.data), bytes([OP_WITHDRAW, WITHDRAW_FROM_DEPOSIT, bump]))

    def test_withdraw_memory_mode_requires_settings(self) -> None:
        orchestrator = self._make(clock=[0], withdraw=WithdrawSettings(mode="memory"))
        self.reader.set_state(self.derived.unlock, self.derived.owner, self.derived.timelock, UnlockState.UNLOCKED)
        with self.assertRaises(ConfigError):
            self._run(orchestrator)


class PollerTests(unittest.TestCase):
    def setUp(self) -> None:
        config = UnlockConfig()
        self.address = Pubkey(bytes([4] * 32))
        self.reader = FakeReader(config, clock=[0])
        self.reader.set_state(self.address, Pubkey(bytes([1] * 32)), Pubkey(bytes([2] * 32)), UnlockState.WAITING_FOR_TIMEOUT)

    def test_check_before_deadline(self) -> None:
        poller = UnlockPoller(self.reader, self.address, 60.0, clock=lambda: UNLOCK_AT - 1)
        result = poller.check()
        self.assertFalse(result.ready)
        self.assertEqual(result.remaining, 1)

    def test_check_at_deadline(self) -> None:
        poller = UnlockPoller(self.reader, self.address, 60.0, clock=lambda: UNLOCK_AT)
        self.assertTrue(poller.check().ready)

    def test_check_uses_cluster_clock_by_default(self) -> None:
        self.reader.clock = [UNLOCK_AT + 5]
        result = UnlockPoller(self.reader, self.address, 60.0).check()
        self.assertTrue(result.ready)
        self.assertEqual(result.current_time, UNLOCK_AT + 5)

    def test_wait_stops_when_cancelled(self) -> None:
        cancel = threading.Event()
        calls: List[float] = []

        def sleep(interval: float) -> None:
            calls.append(interval)
            cancel.set()

        poller = UnlockPoller(self.reader, self.address, 30.0, clock=lambda: 0, sleep=sleep)
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(PollCancelled):
                poller.wait(cancel)
        self.assertEqual(calls, [30.0])

    def test_wait_uses_cancel_event_as_sleep(self) -> None:
        cancel = threading.Event()
        cancel.set()
        poller = UnlockPoller(self.reader, self.address, 3600.0, clock=lambda: 0)
        with self.assertRaises(PollCancelled):
            poller.wait(cancel)

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            UnlockPoller(self.reader, self.address, 0)


if __name__ == "__main__":
    unittest.main()
