"""secp256k1 keys, identities and request signatures."""

from __future__ import annotations

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils

_CURVE = ec.SECP256K1()
# Group order of secp256k1.
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_HALF_N = _N // 2


def gen_prvkey() -> str:
    """Generate a new private key as 64 hex characters."""

    private_value = ec.generate_private_key(_CURVE).private_numbers().private_value
    return f"{private_value:064x}"


def gen_id(prvkey: str) -> str:
    """Derive the public identity (SHA3-256 of the uncompressed public key)."""

    public_bytes = _private_key(prvkey).public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return hashlib.sha3_256(public_bytes[1:]).hexdigest()


def gen_hash(message: str) -> str:
    return hashlib.sha3_256(message.encode("utf-8")).hexdigest()


def gen_signature(message: str, prvkey: str) -> str:
    """Sign `message` and return hex(r || s || v) with a low-s, recoverable signature."""

    private_key = _private_key(prvkey)
    digest = hashlib.sha3_256(message.encode("utf-8")).digest()
    der = private_key.sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA3_256())))
    r, s = utils.decode_dss_signature(der)

    recovery_id = _recovery_id(
        digest=digest,
        r=r,
        s=s,
        private_value=private_key.private_numbers().private_value,
    )
    if s > _HALF_N:
        s = _N - s
        recovery_id ^= 1

    return f"{r:064x}{s:064x}{recovery_id:02x}"


def verify_signature(message: str, signature: str, prvkey: str) -> bool:
    """Check that `signature` was produced for `message` by the holder of `prvkey`."""

    if len(signature) != 130:
        return False
    try:
        r = int(signature[:64], 16)
        s = int(signature[64:128], 16)
    except ValueError:
        return False
    digest = hashlib.sha3_256(message.encode("utf-8")).digest()
    public_key = _private_key(prvkey).public_key()
    try:
        public_key.verify(
            utils.encode_dss_signature(r, s),
            digest,
            ec.ECDSA(utils.Prehashed(hashes.SHA3_256())),
        )
    except InvalidSignature:
        return False
    return True


def _private_key(prvkey: str) -> ec.EllipticCurvePrivateKey:
    try:
        private_value = int(prvkey, 16)
    except ValueError as error:
        raise ValueError("Private key must be a hex string.") from error
    if not 0 < private_value < _N:
        raise ValueError("Private key is out of range for secp256k1.")
    return ec.derive_private_key(private_value, _CURVE)


def _recovery_id(*, digest: bytes, r: int, s: int, private_value: int) -> int:
    # R = (z/s)G + (r/s)Q = ((z + r*d)/s)G, so R is computable from the private key.
    z = int.from_bytes(digest, "big")
    s_inv = pow(s, -1, _N)
    k = ((z + r * private_value) * s_inv) % _N
    point = ec.derive_private_key(k, _CURVE).public_key().public_numbers()
    recovery_id = point.y & 1
    if point.x != r:
        recovery_id |= 2
    return recovery_id
