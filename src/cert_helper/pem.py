"""
Sequential PEM block parser.

Every consumer of multi-object PEM files (the CA chain file, the signed
certificate batch, the web.pem bundle) goes through parse_pem(), which walks
the text once and reports an ordered list of typed blocks together with any
structural problems it met on the way (unbalanced markers, nested BEGIN,
END without BEGIN, type mismatch, unterminated block).
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

_BEGIN_RE = re.compile(rb"^-----BEGIN ([A-Z0-9 ]+)-----\s*$")
_END_RE = re.compile(rb"^-----END ([A-Z0-9 ]+)-----\s*$")

CERTIFICATE = "CERTIFICATE"


@dataclass(frozen=True)
class PemBlock:
    """
    One BEGIN/END delimited object.

    Attributes:
        type (str): Label between the markers, e.g. "CERTIFICATE" or "RSA PRIVATE KEY".
        text (bytes): The block including both marker lines, newline-terminated.
        start_line (int): 1-based line number of the BEGIN marker.
    """
    type: str
    text: bytes
    start_line: int

    @property
    def is_certificate(self) -> bool:
        return self.type in (CERTIFICATE, "TRUSTED CERTIFICATE", "X509 CERTIFICATE")

    @property
    def is_private_key(self) -> bool:
        return self.type.endswith("PRIVATE KEY")

    @property
    def der(self) -> bytes:
        """
        Base64-decode the block body.

        RFC 1421 style header lines ("Proc-Type: ...") and blank lines are skipped.

        Raises:
            ValueError: If the body is not valid base64.
        """
        body = []
        for line in self.text.splitlines()[1:-1]:
            line = line.strip()
            if not line or b":" in line:
                continue
            body.append(line)
        try:
            return base64.b64decode(b"".join(body), validate=True)
        except binascii.Error as e:
            raise ValueError(f"{self.type} block at line {self.start_line} is not valid base64 ({e})")


@dataclass
class PemDocument:
    """Result of parse_pem(): blocks in file order plus structural errors."""
    blocks: list[PemBlock] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    begin_count: int = 0
    end_count: int = 0

    @property
    def balanced(self) -> bool:
        return self.begin_count == self.end_count and not self.errors

    @property
    def certificates(self) -> list[PemBlock]:
        return [b for b in self.blocks if b.is_certificate]

    @property
    def private_keys(self) -> list[PemBlock]:
        return [b for b in self.blocks if b.is_private_key]


def parse_pem(data: bytes) -> PemDocument:
    """
    Split PEM data into its blocks without interpreting their contents.

    Args:
        data (bytes): Raw file contents.

    Returns:
        PemDocument: Blocks in order of appearance and any structural errors.
    """
    doc = PemDocument()
    current: list[bytes] | None = None
    current_type = ""
    start = 0

    for lineno, raw in enumerate(data.splitlines(), start=1):
        line = raw.rstrip(b"\r")
        begin = _BEGIN_RE.match(line)
        if begin:
            doc.begin_count += 1
            if current is not None:
                doc.errors.append(f"line {lineno}: BEGIN {begin.group(1).decode()} inside unterminated {current_type} block")
            current = [line]
            current_type = begin.group(1).decode()
            start = lineno
            continue

        end = _END_RE.match(line)
        if end:
            doc.end_count += 1
            end_type = end.group(1).decode()
            if current is None:
                doc.errors.append(f"line {lineno}: END {end_type} without matching BEGIN")
                continue
            if end_type != current_type:
                doc.errors.append(f"line {lineno}: END {end_type} closes BEGIN {current_type}")
            else:
                current.append(line)
                doc.blocks.append(PemBlock(current_type, b"\n".join(current) + b"\n", start))
            current = None
            continue

        if current is not None:
            current.append(line)

    if current is not None:
        doc.errors.append(f"line {start}: {current_type} block is never terminated")
    return doc


def load_certificate(block: PemBlock) -> x509.Certificate:
    """Parse a certificate block (raises ValueError on malformed data)."""
    if not block.is_certificate:
        raise ValueError(f"Expected CERTIFICATE block at line {block.start_line}, got {block.type}")
    return x509.load_der_x509_certificate(block.der)


def load_private_key(block: PemBlock, password: bytes | None = None):
    """Parse a private key block (raises ValueError/TypeError on malformed data)."""
    if not block.is_private_key:
        raise ValueError(f"Expected PRIVATE KEY block at line {block.start_line}, got {block.type}")
    return serialization.load_pem_private_key(block.text, password=password)


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """
    Parse every certificate in a (possibly concatenated) PEM file.

    Raises:
        ValueError: On structural errors, when no certificate is present, or
            when any single certificate block fails to parse.
    """
    doc = parse_pem(data)
    if doc.errors:
        raise ValueError("; ".join(doc.errors))
    blocks = doc.certificates
    if not blocks:
        raise ValueError("No CERTIFICATE blocks found")
    return [load_certificate(b) for b in blocks]


def fingerprint(cert: x509.Certificate) -> str:
    """SHA-256 fingerprint of the DER encoding, as lowercase hex."""
    return cert.fingerprint(hashes.SHA256()).hex()


def public_key_digest(public_key) -> str:
    """
    Digest of a public key's SubjectPublicKeyInfo encoding.

    Equal for a private key, the CSR and the certificate built from it;
    for RSA this is equivalent to comparing moduli.
    """
    spki = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(spki)
    return digest.finalize().hex()


def to_pem(cert: x509.Certificate) -> bytes:
    """Serialize an X.509 certificate to PEM."""
    return cert.public_bytes(encoding=serialization.Encoding.PEM)
