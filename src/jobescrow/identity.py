"""Caller authentication — recovers who is calling from a signed message.

On a blockchain host the caller identity is ambient: the runtime tells
the contract who sent the call. Off-chain there is no such guarantee, so
a caller proves identity by signing a canonical description of the
operation with an Ethereum key (EIP-191 personal message). The escrow
then receives the recovered address as an explicit ``caller`` argument.

Each signed operation is usable once. Nonces are per signer and must
increase: after an operation signed with nonce n commits, every
operation from that signer with nonce <= n is refused. Only signatures
in canonical form (low-s, v in {27, 28}) are accepted, so a re-encoded
copy of a used signature cannot pass as a new one.

This is NOT identity verification of the parties. It only binds an
operation to the key that signed it.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from jobescrow.errors import NotAuthorized

SignatureLike = Union[bytes, str]

# Order of the secp256k1 group
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SIGNATURE_SIZE = 65
_UNVERIFIED = "<unverified>"


def operation_message(
    job_id: str,
    operation: str,
    params: Optional[Dict[str, Any]] = None,
    nonce: int = 0,
) -> str:
    """Canonical text that a caller signs to authorize an operation.

    Canonical form: sorted keys, Unicode preserved. The same operation
    always produces the same message regardless of argument order.
    """
    return json.dumps(
        {
            "job_id": job_id,
            "operation": operation,
            "params": params or {},
            "nonce": nonce,
        },
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )


def sign_operation(
    private_key: Union[str, bytes],
    job_id: str,
    operation: str,
    params: Optional[Dict[str, Any]] = None,
    nonce: int = 0,
) -> bytes:
    """Sign an operation message; returns the 65-byte signature."""
    message = encode_defunct(text=operation_message(job_id, operation, params, nonce))
    signed = Account.sign_message(message, private_key=private_key)
    return bytes(signed.signature)


@dataclass(frozen=True)
class Authorization:
    """A verified signed operation that has not been consumed yet."""
    address: str
    nonce: int


class CallerAuthenticator:
    """Recovers caller addresses and allows each signed operation once.

    Verification and consumption are separate so a caller can verify,
    run the operation, and consume only once it has committed. A failed
    operation leaves its nonce usable.

    Usage:
        auth = CallerAuthenticator()
        grant = auth.verify("job-1", "submit", sig, {"submission_hash": h}, nonce=1)
        ...  # run the operation
        auth.consume(grant)
    """

    def __init__(self) -> None:
        # Highest consumed nonce per signer address
        self._high_water: Dict[str, int] = {}
        self._lock = threading.Lock()

    def verify(
        self,
        job_id: str,
        operation: str,
        signature: SignatureLike,
        params: Optional[Dict[str, Any]] = None,
        nonce: int = 0,
    ) -> Authorization:
        """Recover the signer and check the nonce has not been used.

        Raises NotAuthorized if the signature is malformed, not in
        canonical form, or carries a nonce at or below the signer's last
        consumed nonce.
        """
        address = self._recover(job_id, operation, signature, params, nonce)
        with self._lock:
            self._check_nonce(address, operation, nonce)
        return Authorization(address, nonce)

    def consume(self, grant: Authorization) -> None:
        """Mark a verified operation as used."""
        with self._lock:
            last = self._high_water.get(grant.address, -1)
            self._high_water[grant.address] = max(last, grant.nonce)

    def recover_caller(
        self,
        job_id: str,
        operation: str,
        signature: SignatureLike,
        params: Optional[Dict[str, Any]] = None,
        nonce: int = 0,
    ) -> str:
        """Verify and consume in one step; returns the checksummed address."""
        address = self._recover(job_id, operation, signature, params, nonce)
        with self._lock:
            self._check_nonce(address, operation, nonce)
            self._high_water[address] = nonce
        return address

    def last_nonce(self, address: str) -> Optional[int]:
        """Highest consumed nonce for ``address``, or None if none used."""
        with self._lock:
            return self._high_water.get(address)

    def _recover(
        self,
        job_id: str,
        operation: str,
        signature: SignatureLike,
        params: Optional[Dict[str, Any]],
        nonce: int,
    ) -> str:
        if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
            raise NotAuthorized(_UNVERIFIED, f"{operation} (nonce must be a non-negative integer)")
        raw = _canonical_signature(signature, operation)
        message = encode_defunct(text=operation_message(job_id, operation, params, nonce))
        try:
            return Account.recover_message(message, signature=raw)
        except Exception as e:
            raise NotAuthorized(_UNVERIFIED, operation) from e

    def _check_nonce(self, address: str, operation: str, nonce: int) -> None:
        last = self._high_water.get(address)
        if last is not None and nonce <= last:
            raise NotAuthorized(
                address, f"{operation} (replayed nonce {nonce}, last used {last})",
            )


def _canonical_signature(signature: SignatureLike, operation: str) -> bytes:
    """Decode a signature and insist on its single canonical encoding."""
    if isinstance(signature, str):
        text = signature[2:] if signature.startswith("0x") else signature
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise NotAuthorized(_UNVERIFIED, f"{operation} (signature is not hex)") from None
    else:
        raw = bytes(signature)

    if len(raw) != SIGNATURE_SIZE:
        raise NotAuthorized(_UNVERIFIED, f"{operation} (signature must be {SIGNATURE_SIZE} bytes)")
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v not in (27, 28) or not 0 < r < SECP256K1_N or not 0 < s <= SECP256K1_N // 2:
        raise NotAuthorized(_UNVERIFIED, f"{operation} (non-canonical signature)")
    return raw
