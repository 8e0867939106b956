"""CLI entrypoint for vmunlock."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from solana.rpc.api import Client

from .config import UnlockConfig, load_config, parse_pubkey
from .constants import ALLOWED_COMMITMENT, CLUSTER_URLS
from .errors import VmUnlockError
from .instructions import associated_token_address
from .keys import load_keypair, setup_owner_keypair
from .orchestrator import UnlockOrchestrator
from .pda import find_deposit_address
from .state import StateReader
from .submit import TransactionSubmitter
from .util import format_timestamp

DEFAULT_CONFIG = "vmunlock.toml"


def _load_config(args: argparse.Namespace) -> UnlockConfig:
    if args.config:
        config = load_config(args.config)
    elif Path(DEFAULT_CONFIG).exists():
        config = load_config(DEFAULT_CONFIG)
    else:
        config = UnlockConfig()
    rpc_url = None
    if args.cluster:
        rpc_url = CLUSTER_URLS[args.cluster]
    if args.rpc_url:
        rpc_url = args.rpc_url
    return config.with_overrides(
        rpc_url=rpc_url,
        program_id=parse_pubkey(args.program_id, "--program-id") if args.program_id else None,
        commitment=args.commitment,
        owner_key_path=Path(args.owner).expanduser() if args.owner else None,
        payer_key_path=Path(args.payer).expanduser() if args.payer else None,
        poll_interval=args.poll_interval,
    )


def _build_orchestrator(config: UnlockConfig, signing: bool = True) -> UnlockOrchestrator:
    owner = load_keypair(config.owner_key_path)
    client = Client(config.rpc_url, commitment=config.commitment)
    reader = StateReader(client, commitment=config.commitment)
    if not signing:
        return UnlockOrchestrator(config, reader, None, owner)
    payer = load_keypair(config.payer_key_path)
    submitter = TransactionSubmitter(client, payer, commitment=config.commitment)
    return UnlockOrchestrator(config, reader, submitter, owner, payer)


def _cmd_setup(args: argparse.Namespace) -> int:
    config = _load_config(args)
    path = config.owner_key_path
    if path.exists() and not args.force:
        raise ValueError(f"{path} already exists; pass --force to overwrite")
    setup_owner_keypair(path)
    return 0


def _cmd_addresses(args: argparse.Namespace) -> int:
    config = _load_config(args)
    orchestrator = _build_orchestrator(config, signing=False)
    derived = orchestrator.derive()
    orchestrator.verify(derived)
    deposit, deposit_bump = find_deposit_address(derived.owner, config.vm_state, config.program_id)
    print(f"Owner: {derived.owner}")
    print(f"Timelock: {derived.timelock} (bump {derived.timelock_bump})")
    print(f"Unlock PDA: {derived.unlock} (bump {derived.unlock_bump})")
    print(f"Deposit PDA: {deposit} (bump {deposit_bump})")
    print(f"Destination ATA: {associated_token_address(derived.owner, config.mint)}")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    orchestrator = _build_orchestrator(config, signing=False)
    derived, phase, account = orchestrator.status()
    print(f"Unlock PDA: {derived.unlock}")
    print(f"Status: {phase.value}")
    if account is not None:
        print(f"Unlock at: {account.unlock_at} ({format_timestamp(account.unlock_at)})")
    return 0


def _cmd_unlock(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if not config.owner_key_path.exists():
        setup_owner_keypair(config.owner_key_path)
    orchestrator = _build_orchestrator(config)
    try:
        report = orchestrator.run(withdraw=not args.no_withdraw)
    except KeyboardInterrupt:
        print("Interrupted; re-run to resume from the current unlock state")
        return 130
    for name, sig in report.signatures.items():
        print(f"{name}: {sig}")
    return 0


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help=f"Path to config TOML (default: ./{DEFAULT_CONFIG} if present)")
    parser.add_argument("--cluster", choices=sorted(CLUSTER_URLS), help="Named cluster RPC URL")
    parser.add_argument("--rpc-url", help="RPC URL (overrides --cluster)")
    parser.add_argument("--program-id", help="VM program id")
    parser.add_argument("--commitment", choices=sorted(ALLOWED_COMMITMENT))
    parser.add_argument("--owner", help="Owner key file")
    parser.add_argument("--payer", help="Payer key file")
    parser.add_argument("--poll-interval", type=float, help="Seconds between clock checks")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog=os.path.basename(sys.argv[0]))
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_setup = sub.add_parser("setup", help="Create the owner key file from a 12-word mnemonic")
    _add_common(p_setup)
    p_setup.add_argument("--force", action="store_true", help="Overwrite an existing owner key file")
    p_setup.set_defaults(func=_cmd_setup)

    p_addresses = sub.add_parser("addresses", help="Print derived timelock addresses")
    _add_common(p_addresses)
    p_addresses.set_defaults(func=_cmd_addresses)

    p_status = sub.add_parser("status", help="Show the current unlock state")
    _add_common(p_status)
    p_status.set_defaults(func=_cmd_status)

    p_unlock = sub.add_parser("unlock", help="Unlock the timelock and withdraw")
    _add_common(p_unlock)
    p_unlock.add_argument("--no-withdraw", action="store_true", help="Stop once the account is unlocked")
    p_unlock.set_defaults(func=_cmd_unlock)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except FileNotFoundError as exc:
        print(str(exc))
        return 1
    except (VmUnlockError, ValueError) as exc:
        print(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
