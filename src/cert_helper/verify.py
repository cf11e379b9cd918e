"""
Verification Engine.

Re-derives every invariant the generator, CA and arranger are expected to
have established, for each node directory under nodes/, against the shared
trust anchor nodes/ca.crt. Checks never raise for a bad node: each one adds a
CheckResult (pass / warn / fail) to that node's report and the run moves on.

Per-node checks, in report order:

    files         node.key and node.crt exist (a miss ends the node's checks)
    key-match     node.key and node.crt carry the same public key
    csr-match     csr/<node>.csr carries the same public key (when present)
    chain         node.crt chains to the trust anchor
    bundle        web.pem: one key, then the leaf, then its ascending chain
    usage         serverAuth + clientAuth (fail), digitalSignature + keyEncipherment (warn)
    expiry        validity window of every certificate in node.crt and web.pem
    bundle-chain  every certificate in web.pem verifies against the anchor
    san           SAN present and containing the node name (warn only)
    pem           balanced markers and parseable certificate blocks
    duplicates    no certificate repeated in web.pem (warn only)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from . import dn
from .arrange import BUNDLE_FILE, CERT_FILE
from .config import Layout, VerifySettings
from .errors import ConfigurationError
from .generator import KEY_FILE
from .pem import PemDocument, fingerprint, load_certificate, parse_pem, public_key_digest
from .registry import NodeIdentity, by_safe_name, load_registry, safe_name

LOGGER = logging.getLogger(__name__)

PASS = "pass"
WARN = "warn"
FAIL = "fail"

MAX_CHAIN_DEPTH = 8


# ---------- results ----------

@dataclass(frozen=True)
class CheckResult:
    """
    Outcome of one check.

    Attributes:
        name (str): Check identifier (e.g. "chain", "expiry").
        status (str): "pass", "warn" or "fail".
        message (str): Human readable explanation.
    """
    name: str
    status: str
    message: str


@dataclass
class NodeReport:
    """All check results for one node directory, in the order they ran."""
    node: str
    checks: list[CheckResult] = field(default_factory=list)
    details: list[str] = field(default_factory=list)     # verbose mode only

    def add(self, name: str, status: str, message: str) -> CheckResult:
        result = CheckResult(name, status, message)
        self.checks.append(result)
        return result

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if c.status == FAIL]

    @property
    def warnings(self) -> list[CheckResult]:
        return [c for c in self.checks if c.status == WARN]

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class VerificationSummary:
    """
    Aggregate result of one verification run.

    Attributes:
        reports (list[NodeReport]): One report per node, sorted by directory name.
        anchor_checks (list[CheckResult]): Trust anchor checks; informational only.
        registry_warnings (list[str]): Registry drift (missing or orphaned nodes).
    """
    reports: list[NodeReport] = field(default_factory=list)
    anchor_checks: list[CheckResult] = field(default_factory=list)
    registry_warnings: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.reports)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.reports if not r.ok)

    @property
    def passed(self) -> int:
        return self.total - self.failed

    @property
    def ok(self) -> bool:
        """Exit-status verdict: only failing node checks count."""
        return self.failed == 0


# ---------- trust anchor and path building ----------

@dataclass
class TrustAnchor:
    """
    Parsed nodes/ca.crt.

    Self-signed certificates are trust roots; any other certificate in the
    file (e.g. the intermediate of a ca-chain.crt) is usable as an
    intermediate when building paths.
    """
    path: Path
    certificates: list[x509.Certificate]
    document: PemDocument

    @property
    def roots(self) -> list[x509.Certificate]:
        return [c for c in self.certificates if _is_self_signed(c)]

    @property
    def intermediates(self) -> list[x509.Certificate]:
        return [c for c in self.certificates if not _is_self_signed(c)]


def load_trust_anchor(path: Path) -> TrustAnchor:
    """
    Read the trust anchor file.

    Raises:
        ConfigurationError: If the file is missing, or holds no parseable
            certificate at all.
    """
    if not path.is_file():
        raise ConfigurationError(f"CA certificate not found at {path}; run arrange first")
    doc = parse_pem(path.read_bytes())
    certs = []
    for block in doc.certificates:
        try:
            certs.append(load_certificate(block))
        except ValueError as e:
            LOGGER.warning("Unreadable certificate in %s at line %d: %s", path, block.start_line, e)
    if not certs:
        raise ConfigurationError(f"No readable certificates in trust anchor {path}")
    return TrustAnchor(path=path, certificates=certs, document=doc)


def _issued_by(child: x509.Certificate, issuer: x509.Certificate) -> bool:
    if child.issuer != issuer.subject:
        return False
    try:
        child.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False
    return True


def _is_self_signed(cert: x509.Certificate) -> bool:
    return _issued_by(cert, cert)


def _check_issuer(issuer: x509.Certificate, cas_below: int) -> None:
    """Raise ValueError if a certificate may not act as CA at this depth."""
    try:
        bc = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        raise ValueError(f"{dn.name_str(issuer.subject)} is not a CA certificate (no basicConstraints)")
    if not bc.ca:
        raise ValueError(f"{dn.name_str(issuer.subject)} is not a CA certificate")
    # pathlen counts the CA certificates below this one, the leaf excluded
    if bc.path_length is not None and cas_below > bc.path_length:
        raise ValueError(f"path length constraint exceeded at {dn.name_str(issuer.subject)}")
    try:
        ku = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
        if not ku.key_cert_sign:                   # keyUsage present but without certificate signing
            raise ValueError(f"{dn.name_str(issuer.subject)} may not sign certificates (keyUsage)")
    except x509.ExtensionNotFound:
        pass                                        # no keyUsage: any use is allowed


def _check_validity(cert: x509.Certificate, at: datetime) -> None:
    if at < cert.not_valid_before_utc:
        raise ValueError(f"{dn.name_str(cert.subject)} is not yet valid")
    if at > cert.not_valid_after_utc:
        raise ValueError(f"{dn.name_str(cert.subject)} has expired")


def verify_chain(
    cert: x509.Certificate,
    roots: list[x509.Certificate],
    intermediates: Iterable[x509.Certificate] = (),
    at: Optional[datetime] = None,
) -> list[x509.Certificate]:
    """
    Build and validate a path from a certificate to one of the trust roots.

    Signatures, CA basic constraints, path length and the validity window of
    every certificate on the path are checked.

    Args:
        cert (x509.Certificate): Certificate to validate.
        roots (list[x509.Certificate]): Self-signed trust roots.
        intermediates (Iterable[x509.Certificate]): Untrusted candidates for
            the middle of the path.
        at (datetime, optional): Validation time. Defaults to now (UTC).

    Returns:
        list[x509.Certificate]: The path, from cert up to the root.

    Raises:
        ValueError: If no valid path exists.
    """
    at = at or datetime.now(timezone.utc)
    pool = list(intermediates)
    path = [cert]
    current = cert

    if any(fingerprint(cert) == fingerprint(r) for r in roots):
        _check_validity(cert, at)
        return path

    for _ in range(MAX_CHAIN_DEPTH):
        cas_below = len(path) - 1                   # CAs between the leaf and the next issuer
        # trusted roots first, then untrusted intermediates not yet on the path
        issuer = next((r for r in roots if _issued_by(current, r)), None)
        if issuer is not None:
            _check_issuer(issuer, cas_below)
            path.append(issuer)
            for c in path:
                _check_validity(c, at)
            return path

        seen = {fingerprint(c) for c in path}       # never reuse a certificate (loops)
        issuer = next((c for c in pool if fingerprint(c) not in seen and _issued_by(current, c)), None)
        if issuer is None:
            raise ValueError(f"unable to get issuer certificate for {dn.name_str(current.subject)} "
                             f"(issuer {dn.name_str(current.issuer)})")
        _check_issuer(issuer, cas_below)
        path.append(issuer)
        current = issuer
    raise ValueError("certificate chain is too long")


# ---------- individual checks ----------

def expiry_result(cert: x509.Certificate, label: str, warning_days: int, now: datetime) -> CheckResult:
    """
    Classify one certificate's validity window.

    Not yet valid and expired are failures; expiring within warning_days is
    a warning; anything else passes.
    """
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    if now < not_before:
        return CheckResult("expiry", FAIL, f"{label} is not yet valid (valid from: {not_before:%Y-%m-%d %H:%M:%S} UTC)")
    if now > not_after:
        return CheckResult("expiry", FAIL, f"{label} is EXPIRED (expired on: {not_after:%Y-%m-%d %H:%M:%S} UTC)")
    days = (not_after - now).days
    if days <= warning_days:
        return CheckResult("expiry", WARN, f"{label} expires in {days} days (on: {not_after:%Y-%m-%d})")
    return CheckResult("expiry", PASS, f"{label} is valid (expires in {days} days)")


def chain_expiry_results(certs: list[x509.Certificate], file_name: str, warning_days: int,
                         now: datetime) -> list[CheckResult]:
    """Expiry result for every certificate of a (possibly concatenated) file."""
    if len(certs) == 1:
        return [expiry_result(certs[0], file_name, warning_days, now)]
    return [
        expiry_result(c, f"{file_name} [cert {i}/{len(certs)}]", warning_days, now)
        for i, c in enumerate(certs, start=1)
    ]


def check_pem_structure(report: NodeReport, doc: PemDocument, file_name: str) -> list[x509.Certificate]:
    """
    Record the structural validity of one PEM file.

    Returns:
        list[x509.Certificate]: Every certificate block that parsed.
    """
    certs = []
    problems = list(doc.errors)
    if not doc.certificates and not doc.private_keys:
        problems.append("no PEM certificate or private key data")
    if doc.begin_count != doc.end_count:
        problems.append(f"mismatched BEGIN/END markers ({doc.begin_count} BEGIN, {doc.end_count} END)")
    for block in doc.certificates:
        try:
            certs.append(load_certificate(block))
        except ValueError as e:
            problems.append(f"corrupted certificate data at line {block.start_line} ({e})")
    if problems:
        report.add("pem", FAIL, f"{file_name}: " + "; ".join(problems))
    else:
        report.add("pem", PASS, f"{file_name} has valid PEM format")
    return certs


def check_bundle(report: NodeReport, doc: PemDocument, certs: list[x509.Certificate],
                 leaf: Optional[x509.Certificate]) -> None:
    """Record the web.pem layout: one key, then the leaf, then its ascending chain."""
    sections = [b for b in doc.blocks if b.is_private_key or b.is_certificate]
    keys = [b for b in sections if b.is_private_key]

    if len(keys) == 1:
        report.add("bundle", PASS, "web.pem contains private key")
    else:
        report.add("bundle", FAIL, f"web.pem contains {len(keys)} private keys, expected exactly one")
    if certs:
        report.add("bundle", PASS, f"web.pem contains certificate(s) (found {len(certs)})")
    else:
        report.add("bundle", FAIL, "web.pem does not contain any certificates")
        return

    if not keys:
        return
    if sections[0].is_private_key and all(b.is_certificate for b in sections[1:]):
        report.add("bundle", PASS, "web.pem has correct order (key before certificates)")
    else:
        report.add("bundle", FAIL, "web.pem has incorrect order (certificates before key)")

    if leaf is not None:
        if fingerprint(certs[0]) == fingerprint(leaf):
            report.add("bundle", PASS, "web.pem starts with node.crt")
        else:
            report.add("bundle", FAIL, f"first certificate in web.pem is not node.crt "
                                       f"(found {dn.name_str(certs[0].subject)})")
    for lower, upper in zip(certs, certs[1:]):
        if upper.subject != lower.issuer:
            report.add("bundle", FAIL, f"web.pem certificates are not in ascending chain order: "
                                       f"{dn.name_str(upper.subject)} follows {dn.name_str(lower.subject)}")
            break

    try:
        key = serialization.load_pem_private_key(keys[0].text, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        report.add("bundle", FAIL, f"web.pem private key cannot be read ({e})")
        return
    if public_key_digest(key.public_key()) != public_key_digest(certs[0].public_key()):
        report.add("bundle", FAIL, "web.pem private key does not match its first certificate")


def check_usage(report: NodeReport, cert: x509.Certificate) -> None:
    """Extended key usage is mandatory; key usage bits only warn."""
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        eku = []
    for oid, label in ((ExtendedKeyUsageOID.SERVER_AUTH, "serverAuth (SSL server)"),
                       (ExtendedKeyUsageOID.CLIENT_AUTH, "clientAuth (SSL client)")):
        if oid in eku:
            report.add("usage", PASS, f"Certificate has {label} usage")
        else:
            report.add("usage", FAIL, f"Certificate missing {label} usage")

    try:
        ku = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        ku = None
    for attr, label in (("digital_signature", "Digital Signature"), ("key_encipherment", "Key Encipherment")):
        if ku is not None and getattr(ku, attr):
            report.add("usage", PASS, f"Certificate has {label} key usage")
        else:
            report.add("usage", WARN, f"Certificate missing {label} key usage")


def check_san(report: NodeReport, cert: x509.Certificate, node_name: str) -> None:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        report.add("san", WARN, "No Subject Alternative Names found in certificate")
        return
    dns_names = san.get_values_for_type(x509.DNSName)
    if not dns_names:
        report.add("san", WARN, "No DNS names found in Subject Alternative Names")
        return
    report.add("san", PASS, f"Certificate contains {len(dns_names)} DNS name(s) in SAN")
    if node_name in dns_names:
        report.add("san", PASS, f"Node name ({node_name}) found in SAN")
    else:
        report.add("san", WARN, f"Node name ({node_name}) not found in SAN")


def check_duplicates(report: NodeReport, certs: list[x509.Certificate]) -> None:
    seen: dict[str, int] = {}
    dupes = []
    for i, cert in enumerate(certs, start=1):
        fp = fingerprint(cert)
        if fp in seen:
            dupes.append(f"cert {i} repeats cert {seen[fp]}")
        else:
            seen[fp] = i
    if dupes:
        report.add("duplicates", WARN, "web.pem contains duplicate certificates: " + ", ".join(dupes))
    else:
        report.add("duplicates", PASS, "web.pem contains no duplicate certificates")


def certificate_details(cert: x509.Certificate) -> list[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        alt = [f"DNS:{v}" for v in san.get_values_for_type(x509.DNSName)]
        alt += [f"IP:{v}" for v in san.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        alt = []
    return [
        f"subject={dn.name_str(cert.subject)}",
        f"issuer={dn.name_str(cert.issuer)}",
        f"serial={cert.serial_number:X}",
        f"notBefore={cert.not_valid_before_utc:%Y-%m-%d %H:%M:%S} UTC",
        f"notAfter={cert.not_valid_after_utc:%Y-%m-%d %H:%M:%S} UTC",
        f"subjectAltName={', '.join(alt) if alt else '(none)'}",
    ]


# ---------- per node ----------

def verify_node(
    node_dir: Path,
    anchor: TrustAnchor,
    layout: Layout,
    settings: VerifySettings,
    node_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> NodeReport:
    """
    Run every check against one node directory.

    Args:
        node_dir (Path): nodes/<safe-name>.
        anchor (TrustAnchor): Parsed nodes/ca.crt.
        layout (Layout): Used to find csr/<safe-name>.csr.
        settings (VerifySettings): Warning threshold and verbosity.
        node_name (str, optional): Name expected in the SAN; defaults to the
            directory name.
        now (datetime, optional): Evaluation time. Defaults to now (UTC).

    Returns:
        NodeReport: Never raises for problems with the node's files.
    """
    now = now or datetime.now(timezone.utc)
    report = NodeReport(node=node_dir.name)
    try:
        _verify_node(report, node_dir, anchor, layout, settings, node_name or node_dir.name, now)
    except (ValueError, TypeError, OSError, UnsupportedAlgorithm) as e:
        report.add("error", FAIL, f"Verification aborted: {e}")
    return report


def _load_key(report: NodeReport, path: Path):
    try:
        return serialization.load_pem_private_key(path.read_bytes(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        report.add("key-match", FAIL, f"Cannot read private key {path.name} ({e})")
        return None


def _verify_node(report: NodeReport, node_dir: Path, anchor: TrustAnchor, layout: Layout,
                 settings: VerifySettings, node_name: str, now: datetime) -> None:
    key_path = node_dir / KEY_FILE
    cert_path = node_dir / CERT_FILE
    bundle_path = node_dir / BUNDLE_FILE

    for path, what in ((key_path, "Private key"), (cert_path, "Certificate")):
        if not path.is_file():
            report.add("files", FAIL, f"{what} not found: {path}")
            return

    cert_doc = parse_pem(cert_path.read_bytes())
    cert_chain = check_pem_structure(report, cert_doc, CERT_FILE)
    leaf = cert_chain[0] if cert_chain else None

    # key-match / csr-match
    key = _load_key(report, key_path)
    if key is not None and leaf is not None:
        key_digest = public_key_digest(key.public_key())
        if key_digest == public_key_digest(leaf.public_key()):
            report.add("key-match", PASS, "Private key and certificate match")
        else:
            report.add("key-match", FAIL, "Private key and certificate DO NOT match")

        csr_path = layout.csr_path(node_dir.name)
        if csr_path.is_file():
            try:
                csr = x509.load_pem_x509_csr(csr_path.read_bytes())
            except ValueError as e:
                report.add("csr-match", FAIL, f"Cannot parse {csr_path.name} ({e})")
            else:
                if public_key_digest(csr.public_key()) == key_digest:
                    report.add("csr-match", PASS, "CSR and private key match")
                else:
                    report.add("csr-match", FAIL, "CSR and private key DO NOT match")

    # chain
    if leaf is not None:
        try:
            verify_chain(leaf, anchor.roots, anchor.intermediates + cert_chain[1:], at=now)
            report.add("chain", PASS, "Certificate is properly signed by CA")
        except ValueError as e:
            report.add("chain", FAIL, f"Certificate verification against CA failed: {e}")

    # bundle
    bundle_certs: list[x509.Certificate] = []
    bundle_doc = None
    if not bundle_path.is_file():
        report.add("bundle", FAIL, "web.pem not found")
    else:
        bundle_doc = parse_pem(bundle_path.read_bytes())
        bundle_certs = check_pem_structure(report, bundle_doc, BUNDLE_FILE)
        check_bundle(report, bundle_doc, bundle_certs, leaf)

    if leaf is None:
        report.add("certificate", FAIL, "node.crt holds no readable certificate; certificate checks skipped")
        return

    check_usage(report, leaf)

    # expiry of every certificate, node.crt first, then whatever web.pem adds
    report.checks.extend(chain_expiry_results(cert_chain, "Node certificate", settings.warning_days, now))
    known = {fingerprint(c) for c in cert_chain}
    extra = []
    for c in bundle_certs:
        if fingerprint(c) not in known:
            known.add(fingerprint(c))
            extra.append(c)
    for c in extra:
        report.checks.append(expiry_result(c, f"web.pem chain certificate {dn.name_str(c.subject)}",
                                           settings.warning_days, now))

    if bundle_certs:
        bad = []
        for i, c in enumerate(bundle_certs, start=1):
            try:
                verify_chain(c, anchor.roots, anchor.intermediates + bundle_certs, at=now)
            except ValueError as e:
                bad.append(f"cert {i} ({dn.name_str(c.subject)}): {e}")
        if bad:
            report.add("bundle-chain", FAIL, "Certificate chain validation failed in web.pem: " + "; ".join(bad))
        else:
            report.add("bundle-chain", PASS, "Certificate chain in web.pem is valid")

    check_san(report, leaf, node_name)

    if bundle_doc is not None and bundle_certs:
        check_duplicates(report, bundle_certs)

    if settings.verbose:
        report.details = certificate_details(leaf)


# ---------- run ----------

def check_anchor(anchor: TrustAnchor, warning_days: int, now: datetime) -> list[CheckResult]:
    """Checks on nodes/ca.crt itself; reported but not part of the exit status."""
    results = []
    count = len(anchor.certificates)
    if count > 1:
        results.append(CheckResult("anchor", PASS, f"CA file contains certificate chain ({count} certificates)"))
    if anchor.document.errors:
        results.append(CheckResult("anchor", FAIL, "CA file: " + "; ".join(anchor.document.errors)))
    if not anchor.roots:
        results.append(CheckResult("anchor", WARN, "CA file contains no self-signed root certificate"))
    results.extend(chain_expiry_results(anchor.certificates, "CA certificate", warning_days, now))
    return results


def check_registry(layout: Layout, node_dirs: list[Path]) -> tuple[list[str], dict[str, NodeIdentity]]:
    """
    Compare the registry against the deployed node directories.

    Returns:
        tuple: (warnings, registry nodes indexed by path-safe name)
    """
    if not layout.registry.is_file():
        return [f"Nodes file not found: {layout.registry} (skipping consistency check)"], {}
    nodes = load_registry(layout.registry)
    expected = by_safe_name(nodes)
    warnings = []
    for safe, node in expected.items():
        if not (layout.node_dir(safe) / CERT_FILE).is_file():
            warnings.append(f"Node from {layout.registry.name} missing certificate: {node.name}")
    for d in node_dirs:
        if d.name not in expected:
            warnings.append(f"Certificate exists for node not in {layout.registry.name}: {d.name}")
    return warnings, expected


def verify_nodes(layout: Layout, settings: VerifySettings, now: Optional[datetime] = None) -> VerificationSummary:
    """
    Verify every node directory (or the single one named in settings).

    Args:
        layout (Layout): Working directory layout (nodes/, csr/, registry).
        settings (VerifySettings): Node filter, warning threshold, verbosity, workers.
        now (datetime, optional): Evaluation time. Defaults to now (UTC).

    Returns:
        VerificationSummary: Per-node reports plus anchor and registry results.

    Raises:
        ConfigurationError: If nodes/ or nodes/ca.crt is missing, or the named
            node has no directory.
    """
    now = now or datetime.now(timezone.utc)
    if not layout.nodes_dir.is_dir():
        raise ConfigurationError(f"{layout.nodes_dir} not found; run generate-csr first")
    anchor = load_trust_anchor(layout.anchor)

    all_dirs = sorted(p for p in layout.nodes_dir.iterdir() if p.is_dir())
    if settings.node:
        target = layout.node_dir(safe_name(settings.node))
        if not target.is_dir():
            raise ConfigurationError(f"Node directory not found: {target}")
        node_dirs = [target]
    else:
        node_dirs = all_dirs

    summary = VerificationSummary()
    summary.anchor_checks = check_anchor(anchor, settings.warning_days, now)
    summary.registry_warnings, registry = check_registry(layout, all_dirs)
    for w in summary.registry_warnings:
        LOGGER.warning(w)

    def run(d: Path) -> NodeReport:
        node = registry.get(d.name)
        return verify_node(d, anchor, layout, settings, node.name if node else d.name, now)

    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        summary.reports = list(pool.map(run, node_dirs))
    return summary
