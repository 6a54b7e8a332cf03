"""SHA256SUMS parsing and detached GPG signature checks for provider releases.

Uses pgpy (pure Python) for OpenPGP, as the GPG key service does.
"""

import hmac

import pgpy
from pgpy.errors import PGPError

from tfregistry.logging_config import get_logger

logger = get_logger(__name__)


class ChecksumMismatchError(Exception):
    pass


class SignatureVerificationError(Exception):
    pass


def parse_shasums(content: bytes | str) -> dict[str, str]:
    """Map filename -> lowercase hex digest from a SHA256SUMS document.

    Lines are ``<hex>  <filename>``; a leading ``*`` (binary mode marker)
    on the filename is dropped and blank lines are ignored.
    """
    text = content.decode() if isinstance(content, bytes) else content
    sums: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        digest, filename = parts
        sums[filename.strip().removeprefix("*")] = digest.lower()
    return sums


def checksum_for(content: bytes | str, filename: str) -> str:
    digest = parse_shasums(content).get(filename)
    if digest is None:
        raise ChecksumMismatchError(f"{filename} is not listed in SHA256SUMS")
    return digest


def verify_listed_checksum(shasums: bytes | str, filename: str, advertised: str) -> str:
    """The upstream-advertised checksum must agree with SHA256SUMS."""
    listed = checksum_for(shasums, filename)
    if not hmac.compare_digest(listed, advertised.lower()):
        raise ChecksumMismatchError(
            f"advertised checksum for {filename} does not match SHA256SUMS"
        )
    return listed


def key_id(ascii_armor: str) -> str:
    """16-character key ID of an ASCII-armored public key."""
    key, _ = pgpy.PGPKey.from_blob(ascii_armor)
    return key.fingerprint.replace(" ", "")[-16:].upper()


def verify_detached_signature(data: bytes, signature: bytes, ascii_armor: str) -> bool:
    try:
        key, _ = pgpy.PGPKey.from_blob(ascii_armor)
        sig = pgpy.PGPSignature.from_blob(signature)
        return bool(key.verify(data, sig))
    except (PGPError, ValueError, TypeError, NotImplementedError) as e:
        logger.debug("Signature check failed", error=str(e))
        return False


def verify_shasums_signature(shasums: bytes, signature: bytes, armored_keys: list[str]) -> str:
    """Verify SHA256SUMS against any of the advertised keys.

    Returns the matching key's armor; raises SignatureVerificationError
    when no key validates the signature.
    """
    if not signature:
        raise SignatureVerificationError("SHA256SUMS signature is empty")
    if not armored_keys:
        raise SignatureVerificationError("upstream advertised no signing keys")
    for armor in armored_keys:
        if verify_detached_signature(shasums, signature, armor):
            return armor
    raise SignatureVerificationError("SHA256SUMS signature does not verify with any advertised key")
