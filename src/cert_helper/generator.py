"""
Node Registry & Request Generator.

For every node in the registry this stage produces, each only if absent:

    nodes/<safe>/options.cnf   DN and SAN configuration (OpenSSL req format)
    nodes/<safe>/node.key      RSA private key (mode 0600)
    csr/<safe>.csr             certificate signing request

An existing options.cnf is read back and is authoritative for the CSR, so an
operator can hand-edit a node's DN or SANs before the request is made.
Re-running with unchanged input touches nothing.
"""

from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID

from . import dn
from .config import GeneratorSettings, Layout
from .errors import ConfigurationError
from .registry import NodeIdentity, load_registry
from .utils.files import PRIVATE_MODE, ensure_dir, write_atomic

LOGGER = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
OPTIONS_FILE = "options.cnf"
KEY_FILE = "node.key"


# ---------- request profile ----------

@dataclass
class RequestProfile:
    """
    Everything needed to build one node's CSR.

    Attributes:
        dn (list[tuple[str, str]]): Ordered DN pairs, CN last.
        alt_names (list[tuple[str, str]]): Ordered ("DNS"|"IP", value) SAN entries.
    """
    dn: list[tuple[str, str]]
    alt_names: list[tuple[str, str]] = field(default_factory=list)


def build_profile(
    node: NodeIdentity,
    template_pairs: list[tuple[str, str]],
    cluster_name: Optional[str] = None,
) -> RequestProfile:
    """
    Derive a node's DN and SAN list.

    SAN order: DNS cn, DNS fqdn, IP 127.0.0.1, then (with a cluster suffix)
    DNS fqdn.cluster and DNS cn.cluster, then every extra alt name, each
    followed by its cluster-qualified variant when a suffix is configured.
    """
    cn = node.common_name
    alt = [("DNS", cn), ("DNS", node.name), ("IP", LOCALHOST)]
    if cluster_name:
        alt.append(("DNS", f"{node.name}.{cluster_name}"))
        alt.append(("DNS", f"{cn}.{cluster_name}"))
    for extra in node.extra_alt_names:
        alt.append(("DNS", extra))
        if cluster_name:
            alt.append(("DNS", f"{extra}.{cluster_name}"))
    return RequestProfile(dn=dn.node_dn(template_pairs, cn), alt_names=alt)


def render_options(profile: RequestProfile) -> str:
    """Render a profile as an OpenSSL request configuration (options.cnf)."""
    lines = [
        "# OpenSSL node configuration file",
        "[ req ]",
        "prompt=no",
        "distinguished_name = distinguished_name",
        "req_extensions = extensions",
        "",
        "[ distinguished_name ]",
    ]
    lines += [f"{k} = {v}" for k, v in profile.dn]
    lines += [
        "",
        "[ extensions ]",
        "subjectAltName = @alt_names",
        "keyUsage = critical, digitalSignature, keyEncipherment",
        "extendedKeyUsage = serverAuth, clientAuth",
        "",
        "[ alt_names ]",
    ]
    counters = {"DNS": 0, "IP": 0}
    for kind, value in profile.alt_names:
        counters[kind] += 1
        lines.append(f"{kind}.{counters[kind]}={value}")
    return "\n".join(lines) + "\n"


def parse_options(text: str) -> RequestProfile:
    """
    Read an options.cnf back into a profile.

    Only the distinguished_name and alt_names sections are interpreted.

    Raises:
        ValueError: If either section is missing or an alt name type is unknown.
    """
    sections: dict[str, list[tuple[str, str]]] = {}
    current = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            current = line[1:-1].strip()
            sections.setdefault(current, [])
            continue
        if current is None or "=" not in line:
            continue
        key, _, value = line.partition("=")
        sections[current].append((key.strip(), value.strip()))

    if "distinguished_name" not in sections:
        raise ValueError("options.cnf has no [ distinguished_name ] section")
    if "alt_names" not in sections:
        raise ValueError("options.cnf has no [ alt_names ] section")

    alt_names = []
    for key, value in sections["alt_names"]:
        kind = key.split(".", 1)[0].upper()
        if kind not in ("DNS", "IP"):
            raise ValueError(f"Unsupported subjectAltName entry in options.cnf: {key}")
        alt_names.append((kind, value))
    return RequestProfile(dn=sections["distinguished_name"], alt_names=alt_names)


# ---------- keys and CSRs ----------

def generate_key(key_bits: int) -> rsa.RSAPrivateKey:
    """Generate an RSA private key with the standard public exponent."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_bits)


def key_to_pem(key) -> bytes:
    """Serialize a private key to unencrypted PEM (traditional OpenSSL format)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _general_name(kind: str, value: str) -> x509.GeneralName:
    if kind == "IP":
        return x509.IPAddress(ipaddress.ip_address(value))
    return x509.DNSName(value)


def build_csr(profile: RequestProfile, key) -> x509.CertificateSigningRequest:
    """
    Build and sign a CSR for a profile.

    Extensions: subjectAltName, keyUsage (critical: digitalSignature,
    keyEncipherment) and extendedKeyUsage (serverAuth, clientAuth).

    Raises:
        ValueError: If the DN or an alt name is malformed.
    """
    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(dn.to_name(profile.dn))
        .add_extension(
            x509.SubjectAlternativeName([_general_name(k, v) for k, v in profile.alt_names]),
            critical=False,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
    )
    return builder.sign(key, hashes.SHA256())


# ---------- per-node and batch ----------

@dataclass
class NodeOutcome:
    """What generate_node() created for one node (False = already present)."""
    node: NodeIdentity
    config_created: bool = False
    key_created: bool = False
    csr_created: bool = False


@dataclass
class GenerationResult:
    """Outcome of a generate_requests() run."""
    outcomes: list[NodeOutcome] = field(default_factory=list)

    def count(self, what: str) -> int:
        return sum(1 for o in self.outcomes if getattr(o, f"{what}_created"))


def validate_template(template: str) -> list[tuple[str, str]]:
    """
    Parse a DN template and check it can produce a valid Name.

    Raises:
        ConfigurationError: If the template is empty, yields no usable pairs,
            or contains an unknown attribute or an invalid value.
    """
    if not template or not template.strip():
        raise ConfigurationError("Base Distinguished Name template is required")
    pairs = dn.parse_dn_template(template)
    if not pairs:
        raise ConfigurationError(f"DN template contains no Key=Value pairs: {template!r}")
    try:
        dn.to_name(dn.node_dn(pairs, "placeholder"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid DN template {template!r}: {e}")
    if not any(dn.base_key(k) in ("O", "organizationName") for k, _ in pairs):
        LOGGER.warning("DN template has no organizationName; the CA signing policy will reject these requests")
    return pairs


def generate_node(
    node: NodeIdentity,
    layout: Layout,
    settings: GeneratorSettings,
    template_pairs: list[tuple[str, str]],
) -> NodeOutcome:
    """
    Create the options.cnf, key and CSR for one node, skipping what exists.

    The three steps run in order inside one call, so the node's directory is
    never read by a later step while an earlier one is still writing it.
    """
    outcome = NodeOutcome(node=node)
    node_dir = ensure_dir(layout.node_dir(node.safe))
    options_path = node_dir / OPTIONS_FILE
    key_path = node_dir / KEY_FILE
    csr_path = layout.csr_path(node.safe)

    if not options_path.is_file():
        LOGGER.info("Creating node configuration file for %s (CN: %s)", node.name, node.common_name)
        profile = build_profile(node, template_pairs, settings.cluster_name)
        write_atomic(options_path, render_options(profile))
        outcome.config_created = True

    if not key_path.is_file():
        LOGGER.info("Generating key for node %s", node.name)
        write_atomic(key_path, key_to_pem(generate_key(settings.key_bits)), mode=PRIVATE_MODE)
        outcome.key_created = True

    if not csr_path.is_file():
        LOGGER.info("Generating CSR for node %s", node.name)
        profile = parse_options(options_path.read_text())
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        csr = build_csr(profile, key)
        write_atomic(csr_path, csr.public_bytes(serialization.Encoding.PEM))
        outcome.csr_created = True

    return outcome


def generate_requests(layout: Layout, settings: GeneratorSettings) -> GenerationResult:
    """
    Run the request generator over every node in the registry.

    Nodes are processed on a bounded thread pool; one failing node aborts the
    run with its exception once the pool has drained.

    Args:
        layout (Layout): Working directory layout (registry, nodes/, csr/).
        settings (GeneratorSettings): DN template, cluster suffix, key size.

    Returns:
        GenerationResult: Per-node outcomes in registry order.

    Raises:
        ConfigurationError: If the registry is missing or the template is
            invalid; nothing is written in that case.
    """
    template_pairs = validate_template(settings.dn_template)
    nodes = load_registry(layout.registry)

    LOGGER.info("Processing nodes from %s", layout.registry)
    LOGGER.info("Base DN: %s", settings.dn_template)
    if settings.cluster_name:
        LOGGER.info("Cluster Name: %s", settings.cluster_name)

    ensure_dir(layout.nodes_dir)
    ensure_dir(layout.csr_dir)

    result = GenerationResult()
    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        futures = [pool.submit(generate_node, n, layout, settings, template_pairs) for n in nodes]
        result.outcomes = [f.result() for f in futures]
    return result

