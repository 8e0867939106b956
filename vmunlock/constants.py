"""Code VM constants for the timelock unlock flow."""

# Production cluster defaults.
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_PROGRAM_ID = "vmZ1WUq8SxjBWcaeTCvgJRZbS84R61uniFsQy5YMRTJ"
DEFAULT_MINT = "kinXdEcpDQeHPEuQnqmUgtYykqKGVFq6CeVX5iAHJq6"
DEFAULT_VM_STATE = "FDrssd3RVeCkgHAT2NkEpkxC5UgfJpKHeebXUMnuzD6D"
DEFAULT_VM_AUTHORITY = "f1ipC31qd2u88MjNYp1T4Cc7rnWfM9ivYpTV1Z8FHnD"
DEFAULT_LOCK_DURATION = 21
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_COMMITMENT = "confirmed"
DEFAULT_OWNER_KEY = "owner_key.json"
DEFAULT_PAYER_KEY = "payer_key.json"

CLUSTER_URLS: dict[str, str] = {
    "localnet": "http://127.0.0.1:8899",
    "devnet": "https://api.devnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
}

ALLOWED_COMMITMENT = {"processed", "confirmed", "finalized"}

# PDA seed tags from the VM program `pda.rs`.
SEED_CODE_VM = b"code_vm"
SEED_UNLOCK = b"vm_unlock_pda_account"
SEED_WITHDRAW_RECEIPT = b"vm_withdraw_receipt_account"
SEED_DEPOSIT = b"vm_deposit_pda"
SEED_TIMELOCK_STATE = b"timelock_state"

MAX_SEEDS = 16
MAX_SEED_LEN = 32

# Instruction discriminators.
OP_INIT_UNLOCK = 7
OP_WITHDRAW = 14
OP_FINALIZE_UNLOCK = 15

WITHDRAW_FROM_MEMORY = 0
WITHDRAW_FROM_DEPOSIT = 2
WITHDRAW_MODES = {
    "memory": WITHDRAW_FROM_MEMORY,
    "deposit": WITHDRAW_FROM_DEPOSIT,
}

# Account discriminators (first byte of the 8-byte account header).
ACCOUNT_CODE_VM = 1
ACCOUNT_UNLOCK_STATE = 5

# UnlockStateAccount layout.
UNLOCK_VM_OFFSET = 8
UNLOCK_OWNER_OFFSET = 40
UNLOCK_ADDRESS_OFFSET = 72
UNLOCK_AT_OFFSET = 104
UNLOCK_BUMP_OFFSET = 112
UNLOCK_STATE_OFFSET = 113
UNLOCK_ACCOUNT_SIZE = 120

# CodeVmAccount layout.
VM_AUTHORITY_OFFSET = 8
VM_MINT_OFFSET = 40
VM_SLOT_OFFSET = 72
VM_POH_OFFSET = 80
VM_OMNIBUS_VAULT_OFFSET = 112
VM_OMNIBUS_BUMP_OFFSET = 144
VM_LOCK_DURATION_OFFSET = 145
VM_BUMP_OFFSET = 146
VM_ACCOUNT_SIZE = 152

# Clock sysvar layout.
CLOCK_UNIX_TIMESTAMP_OFFSET = 32
CLOCK_ACCOUNT_SIZE = 40
