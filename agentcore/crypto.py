"""
agentcore Crypto Module
Hashing and random identifiers used by the core commands.

What lives here:
- Certificate hashes for TLS pinning (SHA-1 over the DER encoding, the
  value agents compare against the peer certificate)
- The machine identifier digest
- Random names for uploaded modules and rendezvous sockets

Encryption of the transport itself is the request channel's business.
"""

import re
import string

from Crypto.Hash import MD5, SHA1
from Crypto.IO import PEM
from Crypto.Random import get_random_bytes, random

from .errors import IoError, ValidationError

_PEM_CERT = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


def cert_der_hash(der: bytes) -> bytes:
    """Return the raw 20-byte SHA-1 of a DER encoded certificate."""
    return SHA1.new(der).digest()


def cert_file_hash(path: str) -> bytes:
    """
    Hash the certificate stored in a PEM (or raw DER) file.

    PEM bundles may also carry a private key; only the first CERTIFICATE
    block is hashed.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise IoError(f"Unable to read certificate {path}: {e}") from e

    match = _PEM_CERT.search(data.decode("latin-1"))
    if match is None:
        if data.lstrip().startswith(b"-----BEGIN"):
            raise ValidationError(f"No certificate found in {path}")
        return cert_der_hash(data)

    try:
        der, _, _ = PEM.decode(match.group(0))
    except ValueError as e:
        raise ValidationError(f"Malformed certificate in {path}: {e}") from e
    return cert_der_hash(der)


def machine_id_digest(machine_id: str) -> str:
    """MD5 hex digest of the identifier reported by the agent."""
    return MD5.new(machine_id.encode("utf-8")).hexdigest()


def random_digits(count: int) -> str:
    return str(random.randint(0, 10 ** count - 1)).zfill(count)


def random_lowercase(length: int) -> str:
    return "".join(random.choice(string.ascii_lowercase) for _ in range(length))


def random_alphanumeric(length: int) -> str:
    return "".join(random.choice(string.ascii_letters + string.digits) for _ in range(length))


def random_between(low: int, high: int) -> int:
    """Random integer in [low, high]."""
    return random.randint(low, high)


def random_bytes(count: int) -> bytes:
    return get_random_bytes(count)
