"""
One-shot transaction signers derived from caller-supplied wallet key material.

Key material is the exported wallet blob kept per handle by the wallet store:
JSON with either a BIP-39 "seed" phrase (default Ethereum derivation path)
or a hex "privateKey". The dispatcher never keeps a signer beyond one call.
"""

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Union

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import SignerDerivationError

logger = logging.getLogger("vibe.signer")

Account.enable_unaudited_hdwallet_features()

KeyMaterial = Union[str, bytes, Mapping[str, Any]]


def _parse(key_material: KeyMaterial) -> Mapping[str, Any]:
    if isinstance(key_material, Mapping):
        return key_material
    if isinstance(key_material, bytes):
        key_material = key_material.decode("utf-8")
    parsed = json.loads(key_material)
    if not isinstance(parsed, Mapping):
        raise ValueError("wallet data is not a JSON object")
    return parsed


def derive_signer(key_material: KeyMaterial) -> LocalAccount:
    """
    Build a local signing account from exported wallet data.

    Raises:
        SignerDerivationError: material is empty, not JSON, or holds neither
            a usable seed nor a usable private key.
    """
    if not key_material:
        raise SignerDerivationError("Failed to create signer: no wallet data")

    try:
        parsed = _parse(key_material)
        seed = parsed.get("seed")
        private_key = parsed.get("privateKey") or parsed.get("private_key")
        if seed:
            return Account.from_mnemonic(seed)
        if private_key:
            return Account.from_key(private_key)
    except Exception as e:
        # Only the exception type is logged; its text can echo the secret.
        logger.error(f"Signer derivation failed: {type(e).__name__}")
        raise SignerDerivationError(f"Failed to create signer: {type(e).__name__}") from None

    logger.error("Signer derivation failed: wallet data has no seed or privateKey")
    raise SignerDerivationError("Unable to extract private key from wallet data")


@contextmanager
def scoped_signer(key_material: KeyMaterial) -> Iterator[LocalAccount]:
    """
    Yield a signer for exactly one operation, then drop every reference
    to it and to the key material, on success and on error alike.

    Python strings are immutable, so nothing can be zeroed in place; the
    guarantee is that nothing here outlives the with-block.
    """
    account = None
    try:
        account = derive_signer(key_material)
        yield account
    finally:
        del account
        del key_material
