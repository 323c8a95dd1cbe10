"""
keystore.py  ─  signing identity resolution
═══════════════════════════════════════════════════════════════════════════════
The engine only needs "a certificate + matching private key". They live in a
PKCS#12 store at NEXPATCH_KEYSTORE; the managed default (self-signed
RSA-2048, alias key0, password 123456) is created on first use.

reset() and set_custom() replace the store; first-use creation only links a
finished file into place when none exists, so concurrent runs agree on one key.
"""

import datetime
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from nexpatch.config import Settings
from nexpatch.constants import DEFAULT_KEY_ALIAS
from nexpatch.errors import SigningIdentityUnavailable

log = logging.getLogger(__name__)

# APK signature algorithm ids
SIG_RSA_PKCS1_V1_5_SHA256 = 0x0103
SIG_ECDSA_SHA256          = 0x0201

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


@dataclass(frozen=True)
class SigningIdentity:
    certificate: x509.Certificate
    private_key: PrivateKey
    alias: str = DEFAULT_KEY_ALIAS

    @property
    def is_rsa(self) -> bool:
        return isinstance(self.private_key, rsa.RSAPrivateKey)

    @property
    def signature_algorithm_id(self) -> int:
        return SIG_RSA_PKCS1_V1_5_SHA256 if self.is_rsa else SIG_ECDSA_SHA256

    @property
    def block_extension(self) -> str:
        """File extension of the v1 signature block."""
        return "RSA" if self.is_rsa else "EC"

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def public_key_der(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.certificate_der).hexdigest()

    @property
    def max_signature_size(self) -> int:
        """Upper bound of sign() output, used to reserve the signing block."""
        if self.is_rsa:
            return (self.private_key.key_size + 7) // 8
        n = (self.private_key.curve.key_size + 7) // 8
        content = 2 * (n + 3)           # two INTEGERs, each may gain a 0x00 pad byte
        return content + (2 if content < 128 else 3)

    def sign(self, data: bytes) -> bytes:
        if self.is_rsa:
            return self.private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        return self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def generate_identity(common_name: str = "nexpatch", curve: Optional[ec.EllipticCurve] = None,
                      key_size: int = 2048, alias: str = DEFAULT_KEY_ALIAS) -> SigningIdentity:
    """Fresh self-signed identity (RSA unless an EC curve is given)."""
    if curve is not None:
        key = ec.generate_private_key(curve)
    else:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365 * 30))
        .sign(key, hashes.SHA256())
    )
    return SigningIdentity(cert, key, alias)


def load_pkcs12(data: bytes, store_password: str, key_password: Optional[str] = None,
                alias: Optional[str] = None) -> SigningIdentity:
    """Load the first key entry; the store password is tried before the alias password."""
    passwords = [store_password]
    if key_password is not None and key_password != store_password:
        passwords.append(key_password)
    store, last_exc = None, None
    for pw in passwords:
        try:
            store = pkcs12.load_pkcs12(data, pw.encode() if pw else None)
            break
        except ValueError as exc:
            last_exc = exc
    if store is None:
        raise SigningIdentityUnavailable(f"cannot open key store: {last_exc}")
    if store.key is None or store.cert is None:
        raise SigningIdentityUnavailable("key store holds no private key entry")
    if not isinstance(store.key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise SigningIdentityUnavailable(f"unsupported key type {type(store.key).__name__}")

    friendly = store.cert.friendly_name.decode() if store.cert.friendly_name else None
    if alias and friendly and friendly != alias:
        raise SigningIdentityUnavailable(f"alias {alias!r} not found (store has {friendly!r})")
    return SigningIdentity(store.cert.certificate, store.key, friendly or alias or DEFAULT_KEY_ALIAS)


def dump_pkcs12(identity: SigningIdentity, password: str) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        identity.alias.encode(), identity.private_key, identity.certificate, None,
        serialization.BestAvailableEncryption(password.encode()))


class IdentityStore:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def path(self) -> Path:
        return self.settings.keystore_path

    def resolve(self) -> SigningIdentity:
        if not self.path.exists():
            if not self.settings.uses_default_keystore:
                raise SigningIdentityUnavailable(f"key store {self.path} does not exist")
            identity = generate_identity(alias=self.settings.key_alias)
            if self._write(identity, exclusive=True):
                log.info("Created default signing identity at %s", self.path)
                return identity
            log.debug("%s was created concurrently, using the stored identity", self.path)
        try:
            data = self.path.read_bytes()
        except OSError as exc:
            raise SigningIdentityUnavailable(f"{self.path}: {exc}") from exc
        return load_pkcs12(data, self.settings.keystore_password,
                           self.settings.key_password, self.settings.key_alias)

    def _write(self, identity: SigningIdentity, exclusive: bool = False) -> bool:
        """
        Write through a private temp file. With `exclusive` the store is
        only linked into place when absent; returns False if another
        writer got there first.
        """
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp",
                                        dir=self.path.parent)
            tmp = Path(name)
            with os.fdopen(fd, "wb") as fh:
                fh.write(dump_pkcs12(identity, self.settings.keystore_password))
            if not exclusive:
                os.replace(tmp, self.path)
                return True
            try:
                os.link(tmp, self.path)
            except FileExistsError:
                return False
            return True
        except OSError as exc:
            raise SigningIdentityUnavailable(f"cannot write key store {self.path}: {exc}") from exc
        finally:
            if tmp is not None:
                tmp.unlink(missing_ok=True)

    def reset(self) -> SigningIdentity:
        """Replace the store with a fresh managed default identity."""
        identity = generate_identity(alias=self.settings.key_alias)
        self._write(identity)
        return identity

    def set_custom(self, source: os.PathLike, store_password: str,
                   alias: Optional[str] = None, key_password: Optional[str] = None) -> SigningIdentity:
        """Import a caller-supplied PKCS#12 store, re-protected with the configured password."""
        try:
            data = Path(source).read_bytes()
        except OSError as exc:
            raise SigningIdentityUnavailable(f"{source}: {exc}") from exc
        identity = load_pkcs12(data, store_password, key_password, alias)
        identity = SigningIdentity(identity.certificate, identity.private_key, self.settings.key_alias)
        self._write(identity)
        return identity
