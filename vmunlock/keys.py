"""Key file loading and first-time owner setup."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Callable, Optional

from mnemonic import Mnemonic
from solders.keypair import Keypair

from .errors import ConfigError

PHRASE_WORDS = 12
SEED_SIZE = 32
KEYPAIR_SIZE = 64

_PHRASE_RE = re.compile(r"^[a-z\s]+$")


def validate_phrase(phrase: str) -> str:
    """Return the normalized phrase or raise ConfigError."""
    words = phrase.split()
    if len(words) != PHRASE_WORDS:
        raise ConfigError(f"Mnemonic must be exactly {PHRASE_WORDS} words")
    if not _PHRASE_RE.match(phrase.strip()):
        raise ConfigError("Mnemonic can only contain lowercase letters and spaces")
    normalized = " ".join(words)
    if not Mnemonic("english").check(normalized):
        raise ConfigError("Mnemonic checksum or wordlist check failed")
    return normalized


def seed_from_mnemonic(phrase: str) -> bytes:
    normalized = validate_phrase(phrase)
    return Mnemonic.to_seed(normalized, passphrase="")[:SEED_SIZE]


def keypair_from_mnemonic(phrase: str) -> Keypair:
    return Keypair.from_seed(seed_from_mnemonic(phrase))


def _keypair_from_private_key(raw: bytes) -> Keypair:
    if len(raw) == SEED_SIZE:
        return Keypair.from_seed(raw)
    if len(raw) == KEYPAIR_SIZE:
        try:
            return Keypair.from_bytes(raw)
        except ValueError as exc:
            raise ConfigError(f"private_key is not a valid ed25519 keypair: {exc}") from exc
    raise ConfigError(f"private_key must be {SEED_SIZE} or {KEYPAIR_SIZE} bytes, got {len(raw)}")


def load_keypair(path: str | Path) -> Keypair:
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Key file not found: {path}")
    try:
        stored = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Key file {path} is not valid JSON: {exc}") from exc
    if not isinstance(stored, dict):
        raise ConfigError(f"Key file {path} must be a JSON object")
    private_key = stored.get("private_key")
    if not isinstance(private_key, list) or not all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 0xFF for b in private_key
    ):
        raise ConfigError(f"Key file {path}: private_key must be a list of bytes")
    keypair = _keypair_from_private_key(bytes(private_key))
    pubkey = stored.get("pubkey")
    if not isinstance(pubkey, str) or not pubkey:
        raise ConfigError(f"Key file {path}: pubkey must be a base58 string")
    if str(keypair.pubkey()) != pubkey:
        raise ConfigError(
            f"Key file {path}: private_key derives {keypair.pubkey()} but pubkey field is {pubkey}"
        )
    return keypair


def format_keypair(keypair: Keypair) -> str:
    private_key = ", ".join(str(b) for b in bytes(keypair.secret()))
    return (
        "{\n"
        f"    \"private_key\": [{private_key}],\n"
        f"    \"pubkey\": \"{keypair.pubkey()}\"\n"
        "}\n"
    )


def write_keypair(path: str | Path, keypair: Keypair) -> Path:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_keypair(keypair))
    return path


def setup_owner_keypair(path: str | Path, prompt: Optional[Callable[[str], str]] = None) -> Keypair:
    prompt = prompt or input
    phrase = prompt("Enter your 12-word mnemonic phrase: ").strip()
    keypair = keypair_from_mnemonic(phrase)
    written = write_keypair(path, keypair)
    print(f"Keypair saved to {written}")
    return keypair
