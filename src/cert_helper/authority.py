"""
Certificate Authority Manager.

Bootstraps (or reuses) a root CA and, optionally, an intermediate CA, then
signs every pending request in csr/ into one timestamped batch directory:

    CA/ca.yml                       persisted root configuration and signing policy
    CA/secure/ca.key                root private key (mode 0600)
    CA/ca.crt                       self-signed root certificate
    CA/ca.db                        root serial counter + issuance ledger
    CA/newcerts/<SERIAL>.pem        copy of every certificate the root issued
    CA/intermediate/...             same layout for the intermediate, plus
                                    intermediate.csr and ca-chain.crt
    certs/YYYY-MM-DD_HH-MM-SS/      ca.crt + <safe-name>.crt for one batch

Every CA artifact is created only if absent, so an existing CA is never
regenerated. Signed batches are append-only.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID, NameOID

from . import dn
from .config import AuthoritySettings, Layout
from .errors import CertHelperError, ConfigurationError, EmptyBatchError, SigningError
from .generator import generate_key, key_to_pem
from .ledger import DB_NAME, IssuanceLedger
from .pem import load_certificates, public_key_digest, to_pem
from .registry import RESERVED_NAMES
from .utils.files import PRIVATE_MODE, ensure_dir, write_atomic, write_new

LOGGER = logging.getLogger(__name__)

DEFAULT_CERT_DAYS = 825
BATCH_FORMAT = "%Y-%m-%d_%H-%M-%S"
POLICY_KEYWORDS = ("supplied", "optional", "match")

ROOT_POLICY = {"organizationName": "supplied", "commonName": "optional"}
INTERMEDIATE_POLICY = {"organizationName": "supplied", "commonName": "optional"}


# ---------- persisted layout and configuration ----------

@dataclass(frozen=True)
class CaPaths:
    """Files owned by one CA level."""
    directory: Path
    config: Path
    key: Path
    cert: Path
    csr: Optional[Path] = None      # intermediate only
    chain: Optional[Path] = None    # intermediate only

    @property
    def db(self) -> Path:
        return self.directory / DB_NAME

    @property
    def newcerts(self) -> Path:
        return self.directory / "newcerts"


def root_paths(layout: Layout) -> CaPaths:
    d = layout.ca_dir
    return CaPaths(directory=d, config=d / "ca.yml", key=d / "secure" / "ca.key", cert=d / "ca.crt")


def intermediate_paths(layout: Layout) -> CaPaths:
    d = layout.ca_dir / "intermediate"
    return CaPaths(
        directory=d,
        config=d / "intermediate.yml",
        key=d / "secure" / "intermediate.key",
        cert=d / "intermediate.crt",
        csr=d / "intermediate.csr",
        chain=d / "ca-chain.crt",
    )


@dataclass
class CaConfig:
    """
    Persisted configuration of one CA level (ca.yml / intermediate.yml).

    Attributes:
        organization (str): O of the CA certificate.
        common_name (str): CN of the CA certificate.
        default_days (int): Validity of issued certificates unless overridden.
        path_length (int): BasicConstraints pathlen of the CA certificate.
        copy_extensions (str): Only "copy" is supported: request extensions are kept.
        signing_policy (dict[str, str]): attribute name -> supplied | optional | match.
    """
    organization: str
    common_name: str
    default_days: int
    path_length: int
    copy_extensions: str = "copy"
    signing_policy: dict[str, str] = field(default_factory=lambda: dict(ROOT_POLICY))

    def to_yaml(self) -> str:
        return yaml.safe_dump({
            "organization": self.organization,
            "common_name": self.common_name,
            "default_days": self.default_days,
            "path_length": self.path_length,
            "copy_extensions": self.copy_extensions,
            "signing_policy": dict(self.signing_policy),
        }, sort_keys=False)

    @classmethod
    def load(cls, path: Path) -> "CaConfig":
        """
        Read a persisted CA configuration.

        Raises:
            ConfigurationError: If the file is not valid YAML, misses keys, or
                holds an unknown policy keyword or attribute.
        """
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigurationError(f"CA configuration is not valid YAML: {path} ({e})")
        if not isinstance(data, dict):
            raise ConfigurationError(f"CA configuration must contain a mapping: {path}")
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid CA configuration {path}: {e}")
        if config.copy_extensions != "copy":
            raise ConfigurationError(f"{path}: unsupported copy_extensions value {config.copy_extensions!r}")
        for attr, rule in config.signing_policy.items():
            if rule not in POLICY_KEYWORDS:
                raise ConfigurationError(f"{path}: unknown policy keyword {rule!r} for {attr}")
            if attr not in dn.ATTRIBUTES:
                raise ConfigurationError(f"{path}: unknown policy attribute {attr!r}")
        return config


def _load_or_create_config(path: Path, default: CaConfig, organization: str) -> CaConfig:
    if not path.is_file():
        LOGGER.info("Creating CA configuration %s", path)
        write_atomic(path, default.to_yaml())
        return default
    config = CaConfig.load(path)
    if config.organization != organization:
        LOGGER.warning("%s was created for organization %r; ignoring requested %r",
                       path, config.organization, organization)
    return config


# ---------- certificate authority ----------

def _ca_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=True,         # signs certificates
        crl_sign=True,
        encipher_only=False,
        decipher_only=False,
    )


def request_digest(csr: x509.CertificateSigningRequest) -> str:
    """SHA-256 of a request's DER encoding; identifies an already-signed request."""
    return hashlib.sha256(csr.public_bytes(serialization.Encoding.DER)).hexdigest()


class CertificateAuthority:
    """
    One CA level: key, certificate, persisted configuration and ledger.

    Attributes:
        name (str): "root" or "intermediate".
        paths (CaPaths): Files owned by this level.
        config (CaConfig): Persisted configuration in force.
        key: CA private key.
        cert (x509.Certificate): CA certificate.
        ledger (IssuanceLedger): Serial counter and issuance record.
    """

    def __init__(self, name: str, paths: CaPaths, config: CaConfig, key, cert: x509.Certificate,
                 ledger: IssuanceLedger):
        self.name = name
        self.paths = paths
        self.config = config
        self.key = key
        self.cert = cert
        self.ledger = ledger

    @property
    def anchor_path(self) -> Path:
        """File handed out as the trust anchor for certificates this CA issues."""
        return self.paths.chain or self.paths.cert

    def check_policy(self, subject: x509.Name) -> None:
        """
        Apply the signing policy to a request subject ("optional" accepts anything).

        Raises:
            SigningError: On a missing 'supplied' field or a 'match' mismatch.
        """
        for attr, rule in self.config.signing_policy.items():
            oid = dn.ATTRIBUTES[attr]                       # policy keys are long attribute names
            value = dn.get_attribute(subject, oid)          # first value; None if absent
            if rule == "supplied" and not value:
                # empty values count as missing
                raise SigningError(f"The {attr} field needed to be supplied and was missing")
            if rule == "match":
                # compared with the signing CA's own subject, not the root's
                expected = dn.get_attribute(self.cert.subject, oid)
                if value != expected:
                    raise SigningError(f"The {attr} field is different between CA certificate ({expected}) "
                                       f"and request ({value})")

    def _authority_key_identifier(self) -> x509.AuthorityKeyIdentifier:
        try:
            ski = self.cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
            return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski)
        except x509.ExtensionNotFound:
            return x509.AuthorityKeyIdentifier.from_issuer_public_key(self.key.public_key())

    def sign(
        self,
        csr: x509.CertificateSigningRequest,
        days: int,
        node: Optional[str] = None,
        extensions: Optional[list[tuple[x509.ExtensionType, bool]]] = None,
    ) -> x509.Certificate:
        """
        Issue a certificate for a request, reserving its serial from the ledger.

        Args:
            csr (x509.CertificateSigningRequest): Request to sign.
            days (int): Validity from now.
            node (str, optional): Path-safe node name recorded in the ledger.
            extensions (list, optional): (extension, critical) pairs to use
                instead of copying the request's extensions.

        Returns:
            x509.Certificate: The issued certificate; also copied to newcerts/.
        """
        if extensions is None:
            extensions = [(e.value, e.critical) for e in csr.extensions
                          if e.oid != ExtensionOID.AUTHORITY_KEY_IDENTIFIER]
        else:
            extensions = list(extensions)
        present = {type(ext) for ext, _ in extensions}
        if x509.SubjectKeyIdentifier not in present:
            extensions.append((x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), False))
        extensions.append((self._authority_key_identifier(), False))

        digest = request_digest(csr)
        now = datetime.now(timezone.utc)
        with self.ledger.issue() as issuance:
            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)                      # DN comes from the request
                .issuer_name(self.cert.subject)
                .public_key(csr.public_key())
                .serial_number(issuance.serial)                 # reserved under the ledger transaction
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=days))
            )
            for ext, critical in extensions:
                builder = builder.add_extension(ext, critical=critical)
            cert = builder.sign(private_key=self.key, algorithm=hashes.SHA256())
            issuance.record(cert, node=node, request_digest=digest)

        write_atomic(self.paths.newcerts / f"{cert.serial_number:02X}.pem", to_pem(cert))
        return cert


def _load_or_create_key(path: Path, key_bits: int):
    if path.is_file():
        return serialization.load_pem_private_key(path.read_bytes(), password=None)
    LOGGER.info("Generating CA key %s", path)
    key = generate_key(key_bits)
    ensure_dir(path.parent).chmod(0o700)
    write_atomic(path, key_to_pem(key), mode=PRIVATE_MODE)
    return key


def _load_cert(path: Path, key) -> x509.Certificate:
    cert = load_certificates(path.read_bytes())[0]
    if public_key_digest(cert.public_key()) != public_key_digest(key.public_key()):
        raise ConfigurationError(f"CA certificate {path} does not match its private key")
    return cert


def _ca_subject(config: CaConfig) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, config.organization),
        x509.NameAttribute(NameOID.COMMON_NAME, config.common_name),
    ])


def ensure_root(layout: Layout, settings: AuthoritySettings) -> CertificateAuthority:
    """
    Load the root CA, creating its configuration, key and certificate if absent.

    Args:
        layout (Layout): Working directory layout.
        settings (AuthoritySettings): Organization, validity and key size for a new root.

    Returns:
        CertificateAuthority: The root CA.
    """
    paths = root_paths(layout)
    ensure_dir(paths.directory)
    default = CaConfig(
        organization=settings.organization,
        common_name=f"{settings.organization} CA",
        default_days=settings.cert_days or DEFAULT_CERT_DAYS,
        path_length=1,
        signing_policy=dict(ROOT_POLICY),
    )
    config = _load_or_create_config(paths.config, default, settings.organization)
    key = _load_or_create_key(paths.key, settings.key_bits)

    if paths.cert.is_file():
        cert = _load_cert(paths.cert, key)
    else:
        LOGGER.info("Creating self-signed CA certificate %s", paths.cert)
        subject = _ca_subject(config)
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)                                       # self-signed
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=settings.ca_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=config.path_length), critical=True)
            .add_extension(_ca_key_usage(), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(private_key=key, algorithm=hashes.SHA256())
        )
        write_atomic(paths.cert, to_pem(cert))

    ledger = IssuanceLedger(paths.db)
    ledger.initialize()
    return CertificateAuthority("root", paths, config, key, cert, ledger)


def ensure_intermediate(root: CertificateAuthority, layout: Layout,
                        settings: AuthoritySettings) -> CertificateAuthority:
    """
    Load the intermediate CA, creating and root-signing it if absent.

    The intermediate certificate is issued through the root's ledger with
    CA:true and pathlen 0; ca-chain.crt (intermediate then root) becomes the
    trust anchor for everything the intermediate signs.
    """
    paths = intermediate_paths(layout)
    ensure_dir(paths.directory)
    default = CaConfig(
        organization=root.config.organization,
        common_name=f"{root.config.organization} Intermediate CA",
        default_days=root.config.default_days,
        path_length=0,
        signing_policy=dict(INTERMEDIATE_POLICY),
    )
    config = _load_or_create_config(paths.config, default, root.config.organization)
    key = _load_or_create_key(paths.key, settings.key_bits)

    if paths.csr.is_file():
        csr = x509.load_pem_x509_csr(paths.csr.read_bytes())
    else:
        LOGGER.info("Creating intermediate CA request %s", paths.csr)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(_ca_subject(config))
            .sign(key, hashes.SHA256())
        )
        write_atomic(paths.csr, csr.public_bytes(serialization.Encoding.PEM))

    if paths.cert.is_file():
        cert = _load_cert(paths.cert, key)
    else:
        LOGGER.info("Signing intermediate CA certificate with the root CA")
        root.check_policy(csr.subject)
        cert = root.sign(
            csr,
            days=settings.intermediate_days,
            extensions=[
                (x509.BasicConstraints(ca=True, path_length=config.path_length), True),   # no further delegation
                (_ca_key_usage(), True),
            ],
        )
        write_atomic(paths.cert, to_pem(cert))

    chain = to_pem(cert) + to_pem(root.cert)
    if not paths.chain.is_file() or paths.chain.read_bytes() != chain:
        LOGGER.info("Writing CA chain file %s", paths.chain)
        write_atomic(paths.chain, chain)

    ledger = IssuanceLedger(paths.db)
    ledger.initialize()
    return CertificateAuthority("intermediate", paths, config, key, cert, ledger)


# ---------- batch signing ----------

@dataclass(frozen=True)
class PendingRequest:
    node: str           # path-safe node name (CSR file stem)
    path: Path
    csr: x509.CertificateSigningRequest
    digest: str


@dataclass
class SigningBatch:
    """
    Outcome of a sign_requests() run.

    Attributes:
        directory (Path): Timestamped batch directory.
        issued (list[tuple[str, int]]): (node, serial) in signing order.
        anchor (Path): Trust anchor copied into the batch as ca.crt.
        signer (str): CA level that signed the batch.
    """
    directory: Path
    issued: list[tuple[str, int]] = field(default_factory=list)
    anchor: Optional[Path] = None
    signer: str = "root"

    @property
    def serials(self) -> list[int]:
        return [s for _, s in self.issued]


def load_request(path: Path) -> x509.CertificateSigningRequest:
    """
    Parse and signature-check a CSR file.

    Raises:
        SigningError: If the file is not a valid, self-consistent request.
    """
    node = path.stem
    try:
        csr = x509.load_pem_x509_csr(path.read_bytes())
    except ValueError as e:
        raise SigningError(f"Cannot parse request {path.name}: {e}", node=node)
    if not csr.is_signature_valid:
        raise SigningError(f"Request {path.name} has an invalid signature", node=node)
    return csr


def collect_pending(csr_dir: Path, signer: CertificateAuthority, resign: bool = False) -> tuple[list[PendingRequest], int]:
    """
    Pre-flight every request in csr/ before anything is signed.

    Returns:
        tuple: (pending requests sorted by node name, number of CSR files seen)

    Raises:
        SigningError: If any request fails to parse or violates the signing
            policy; the offending node is named.
    """
    files = sorted(csr_dir.glob("*.csr"))
    issued = signer.ledger.issued_digests()
    pending = []
    for path in files:
        if path.stem in RESERVED_NAMES:
            raise SigningError(f"Request file {path.name} uses a reserved node name", node=path.stem)
        csr = load_request(path)
        try:
            signer.check_policy(csr.subject)
        except SigningError as e:
            raise SigningError(str(e), node=path.stem)
        digest = request_digest(csr)
        if digest in issued and not resign:
            LOGGER.info("Request for %s was already signed, skipping", path.stem)
            continue
        pending.append(PendingRequest(node=path.stem, path=path, csr=csr, digest=digest))
    return pending, len(files)


def new_batch_dir(certs_dir: Path, now: Optional[datetime] = None) -> Path:
    """Create certs/<timestamp>, adding a numeric suffix if it is already taken."""
    stamp = (now or datetime.now()).strftime(BATCH_FORMAT)
    ensure_dir(certs_dir)
    candidate, n = certs_dir / stamp, 0
    while True:
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            n += 1
            candidate = certs_dir / f"{stamp}_{n}"


def sign_requests(layout: Layout, settings: AuthoritySettings, now: Optional[datetime] = None) -> SigningBatch:
    """
    Bootstrap the CA hierarchy and sign every pending request into a new batch.

    Args:
        layout (Layout): Working directory layout (csr/, CA/, certs/).
        settings (AuthoritySettings): CA and signing settings.
        now (datetime, optional): Clock used for the batch directory name.

    Returns:
        SigningBatch: Batch directory and issued serials.

    Raises:
        ConfigurationError: If csr/ does not exist (nothing is touched).
        SigningError: If any pending request is malformed, violates policy or
            uses a reserved name (no certificate is issued in that case), or
            if an issued certificate cannot be written into the batch.
        EmptyBatchError: If no request is pending.
    """
    if not layout.csr_dir.is_dir():
        raise ConfigurationError(f"Missing request directory: {layout.csr_dir}")

    signer = ensure_root(layout, settings)
    if settings.use_intermediate:
        signer = ensure_intermediate(signer, layout, settings)

    pending, seen = collect_pending(layout.csr_dir, signer, settings.resign)
    if not seen:
        raise EmptyBatchError(f"No CSR files found in {layout.csr_dir}")
    if not pending:
        raise EmptyBatchError(f"All {seen} requests in {layout.csr_dir} are already signed; "
                              "nothing to do (use --resign to sign them again)")

    days = settings.cert_days or signer.config.default_days
    batch = SigningBatch(directory=new_batch_dir(layout.certs_dir, now), anchor=signer.anchor_path,
                         signer=signer.name)
    write_new(batch.directory / "ca.crt", signer.anchor_path.read_bytes())

    for req in pending:
        LOGGER.info("Signing certificate for: %s", req.node)
        try:
            cert = signer.sign(req.csr, days=days, node=req.node)
        except CertHelperError:
            raise
        except (ValueError, TypeError, OSError) as e:
            raise SigningError(f"Signing failed: {e}", node=req.node) from e
        batch.issued.append((req.node, cert.serial_number))
        try:
            write_new(batch.directory / f"{req.node}.crt", to_pem(cert))
        except OSError as e:
            # the ledger already holds this serial; only --resign brings the request back
            raise SigningError(
                f"Certificate serial {cert.serial_number:X} was issued but could not be written "
                f"to {batch.directory} ({e}); rerun with --resign",
                node=req.node,
            ) from e

    LOGGER.info("Signed %d certificate(s) into %s", len(batch.issued), batch.directory)
    return batch
