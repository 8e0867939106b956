"""Sign, send and confirm transactions."""

from __future__ import annotations

from typing import List, Sequence

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.transaction import Transaction

from .errors import ConfirmationTimeout, SubmissionError, TransportError


def order_signers(payer: Keypair, signers: Sequence[Keypair]) -> List[Keypair]:
    ordered = [payer]
    seen = {payer.pubkey()}
    for signer in signers:
        if signer.pubkey() in seen:
            continue
        seen.add(signer.pubkey())
        ordered.append(signer)
    return ordered


class TransactionSubmitter:
    """Builds one transaction per call; the payer funds fees and always signs."""

    def __init__(self, client: Client, payer: Keypair, commitment: str = "confirmed") -> None:
        self.client = client
        self.payer = payer
        self.commitment = commitment

    def _latest_blockhash(self):
        try:
            return self.client.get_latest_blockhash(commitment=self.commitment).value.blockhash
        except SolanaRpcException as exc:
            raise TransportError(f"RPC transport error fetching blockhash: {exc}") from exc
        except RPCException as exc:
            raise TransportError(f"RPC error fetching blockhash: {exc}") from exc

    def build(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> Transaction:
        if not instructions:
            raise ValueError("at least one instruction is required")
        tx = Transaction.new_with_payer(list(instructions), self.payer.pubkey())
        blockhash = self._latest_blockhash()
        tx.sign(order_signers(self.payer, signers), blockhash)
        return tx

    def submit(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> str:
        tx = self.build(instructions, signers)
        try:
            sig = self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
            ).value
        except RPCException as exc:
            raise SubmissionError(f"Transaction rejected: {exc}") from exc
        except SolanaRpcException as exc:
            raise TransportError(f"RPC transport error sending transaction: {exc}") from exc

        try:
            resp = self.client.confirm_transaction(sig, commitment=self.commitment)
        except UnconfirmedTxError as exc:
            raise ConfirmationTimeout(f"Transaction {sig} was not confirmed: {exc}") from exc
        except SolanaRpcException as exc:
            raise TransportError(f"RPC transport error confirming {sig}: {exc}") from exc
        except RPCException as exc:
            raise TransportError(f"RPC error confirming {sig}: {exc}") from exc

        statuses = resp.value
        status = statuses[0] if statuses else None
        if status is None:
            raise ConfirmationTimeout(f"Transaction {sig} has no status at {self.commitment}")
        if status.err is not None:
            raise SubmissionError(f"Transaction {sig} failed: {status.err}")
        return str(sig)
