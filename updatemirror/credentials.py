from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from updatemirror.errors import ConfigError

log = logging.getLogger("updatemirror.credentials")

CERT_SUFFIXES = (".pem", ".crt", ".cer")
_TLS_AUTH_USAGES = frozenset({ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH})
_KEY_BLOCK_RE = re.compile(
    rb"-----BEGIN (?:RSA |EC |)PRIVATE KEY-----.+?-----END (?:RSA |EC |)PRIVATE KEY-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class ClientCredential:
    cert_path: Path
    key_path: Path
    subject: str
    fingerprint_sha256: str

    def as_requests_cert(self) -> tuple[str, str]:
        return str(self.cert_path), str(self.key_path)


def _name_key(name: x509.Name) -> frozenset[tuple[str, str]]:
    return frozenset(
        (attr.oid.dotted_string, str(attr.value).strip().casefold()) for attr in name
    )


def parse_issuer(issuer: str) -> frozenset[tuple[str, str]]:
    try:
        return _name_key(x509.Name.from_rfc4514_string(issuer))
    except ValueError as exc:
        raise ConfigError(f"UM_TRUSTED_ISSUER is not a valid RFC 4514 name: {issuer!r}") from exc


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _has_digital_signature(cert: x509.Certificate) -> bool:
    try:
        usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return bool(usage.digital_signature)


def _has_tls_auth(cert: x509.Certificate) -> bool:
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return any(oid in _TLS_AUTH_USAGES for oid in eku)


def _private_key_path(cert_path: Path, cert: x509.Certificate) -> Path | None:
    wanted = _public_der(cert.public_key())
    for candidate in (cert_path, cert_path.with_suffix(".key")):
        try:
            data = candidate.read_bytes()
        except OSError:
            continue
        for block in _KEY_BLOCK_RE.findall(data):
            try:
                key = serialization.load_pem_private_key(block, password=None)
            except (TypeError, ValueError):
                # encrypted or unsupported keys cannot be presented unattended
                continue
            if _public_der(key.public_key()) == wanted:
                return candidate
    return None


def _load_certificates(path: Path) -> list[x509.Certificate]:
    data = path.read_bytes()
    if b"-----BEGIN CERTIFICATE-----" not in data:
        return []
    return x509.load_pem_x509_certificates(data)


def select_client_credential(
    store_dir: str | Path, trusted_issuer: str
) -> ClientCredential | None:
    """Return the first usable client certificate in ``store_dir``.

    A certificate qualifies when it allows digital signatures, is marked for
    TLS client or server authentication, has a matching private key next to
    it and was issued by ``trusted_issuer``. ``None`` means no match.
    """
    issuer_key = parse_issuer(trusted_issuer)
    store = Path(store_dir)
    if not store.is_dir():
        log.warning("credentials.store_missing path=%s", store)
        return None

    for path in sorted(p for p in store.iterdir() if p.suffix.lower() in CERT_SUFFIXES):
        try:
            certificates = _load_certificates(path)
        except (OSError, ValueError) as exc:
            log.debug("credentials.unreadable path=%s error=%s", path, exc)
            continue
        for cert in certificates:
            if _name_key(cert.issuer) != issuer_key:
                continue
            if not (_has_digital_signature(cert) and _has_tls_auth(cert)):
                continue
            key_path = _private_key_path(path, cert)
            if key_path is None:
                continue
            credential = ClientCredential(
                cert_path=path,
                key_path=key_path,
                subject=cert.subject.rfc4514_string(),
                fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
            )
            log.info(
                "credentials.selected subject=%s fingerprint=%s",
                credential.subject,
                credential.fingerprint_sha256[:16],
            )
            return credential

    log.warning("credentials.not_found store=%s issuer=%s", store, trusted_issuer)
    return None
