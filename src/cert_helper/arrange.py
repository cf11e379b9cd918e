"""
Bundle Arranger.

Maps the certificates of one signing batch back onto node directories and
assembles each node's deployment files:

    nodes/ca.crt            shared trust anchor (root or chain)
    nodes/<safe>/node.key   private key (copied from the batch in CA-key mode)
    nodes/<safe>/node.crt   leaf certificate
    nodes/<safe>/web.pem    node.key + node.crt + nodes/ca.crt, in that order
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .authority import BATCH_FORMAT
from .config import ArrangeSettings, Layout
from .errors import ConfigurationError, EmptyBatchError
from .generator import KEY_FILE
from .utils.files import PRIVATE_MODE, ensure_dir, ensure_trailing_newline, write_if_changed

LOGGER = logging.getLogger(__name__)

ANCHOR_FILE = "ca.crt"
CERT_FILE = "node.crt"
BUNDLE_FILE = "web.pem"


@dataclass
class ArrangeResult:
    """
    Outcome of an arrange_bundles() run.

    Attributes:
        deployed (list[str]): Path-safe node names that received a bundle.
        skipped (list[tuple[str, str]]): (node, reason) for every skipped certificate.
        anchor (Path | None): Trust anchor that was deployed, if any.
    """
    deployed: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    anchor: Optional[Path] = None


def find_anchor(certs_dir: Path, explicit: Optional[Path] = None) -> Optional[Path]:
    """
    Resolve the trust anchor for a batch.

    An explicit file must exist; otherwise a ca.crt inside the batch
    directory is used when present.

    Raises:
        ConfigurationError: If an explicit anchor is given but missing.
    """
    if explicit is not None:
        if not explicit.is_file():
            raise ConfigurationError(f"CA certificate not found: {explicit}")
        return explicit
    candidate = certs_dir / ANCHOR_FILE
    if candidate.is_file():
        LOGGER.info("Found CA certificate: %s", candidate)
        return candidate
    return None


def assemble_bundle(key: bytes, cert: bytes, anchor: Optional[bytes] = None) -> bytes:
    """Concatenate key, leaf certificate and (optionally) anchor, in that order."""
    parts = [ensure_trailing_newline(key), ensure_trailing_newline(cert)]
    if anchor:
        parts.append(ensure_trailing_newline(anchor))
    return b"".join(parts)


def _node_certificates(certs_dir: Path) -> list[Path]:
    return sorted(p for p in certs_dir.glob("*.crt") if p.is_file() and p.name != ANCHOR_FILE)


def arrange_bundles(layout: Layout, settings: ArrangeSettings) -> ArrangeResult:
    """
    Deploy every certificate in a batch directory into the node tree.

    Local-key mode (default) only bundles nodes whose nodes/<safe>/node.key
    already exists; CA-key mode (copy_keys) takes <certs_dir>/<safe>.key and
    creates the node directory. Files already holding the right bytes are
    left untouched.

    Args:
        layout (Layout): Working directory layout (nodes/).
        settings (ArrangeSettings): Batch directory, optional anchor, mode.

    Returns:
        ArrangeResult: Deployed and skipped nodes.

    Raises:
        ConfigurationError: If the batch directory, the explicit anchor, or
            (in local-key mode) nodes/ is missing.
        EmptyBatchError: If no certificate could be deployed.
    """
    if settings.certs_dir is None:
        raise ConfigurationError("Certificates directory is required")
    certs_dir = settings.certs_dir
    if not certs_dir.is_dir():
        raise ConfigurationError(f"Certificates directory not found: {certs_dir}")
    if not layout.nodes_dir.is_dir() and not settings.copy_keys:
        raise ConfigurationError(
            f"{layout.nodes_dir} not found; run generate-csr first or use --copy-keys "
            "if the CA generated the keys"
        )
    anchor = find_anchor(certs_dir, settings.ca_cert)

    LOGGER.info("Deploying certificates from: %s", certs_dir)
    ensure_dir(layout.nodes_dir)
    result = ArrangeResult()

    anchor_bytes = None
    if anchor is not None:
        anchor_bytes = anchor.read_bytes()
        if write_if_changed(layout.anchor, anchor_bytes):
            LOGGER.info("Copied CA certificate to %s", layout.anchor)
        result.anchor = anchor

    for cert_path in _node_certificates(certs_dir):
        node = cert_path.stem
        node_dir = layout.node_dir(node)
        key_path = node_dir / KEY_FILE

        if settings.copy_keys:
            source_key = certs_dir / f"{node}.key"
            if not source_key.is_file():
                LOGGER.warning("Key file not found: %s, skipping %s", source_key, node)
                result.skipped.append((node, f"missing {source_key.name}"))
                continue
            LOGGER.info("Deploying certificate and key for: %s", node)
            ensure_dir(node_dir)
            key_bytes = source_key.read_bytes()
            write_if_changed(key_path, key_bytes, mode=PRIVATE_MODE)
        else:
            if not key_path.is_file():
                LOGGER.warning("Node key not found for %s, skipping", node)
                result.skipped.append((node, "no local node.key"))
                continue
            LOGGER.info("Deploying certificate for: %s", node)
            key_bytes = key_path.read_bytes()

        cert_bytes = cert_path.read_bytes()
        write_if_changed(node_dir / CERT_FILE, cert_bytes)
        write_if_changed(node_dir / BUNDLE_FILE, assemble_bundle(key_bytes, cert_bytes, anchor_bytes),
                         mode=PRIVATE_MODE)     # carries the private key
        result.deployed.append(node)

    if not result.deployed:
        raise EmptyBatchError(
            f"No certificates were deployed from {certs_dir}; make sure it contains "
            ".crt files matching node names"
        )
    LOGGER.info("Deployed %d certificate(s)", len(result.deployed))
    return result


def _batch_key(path: Path) -> Optional[tuple[datetime, int]]:
    """Sort key of a batch directory name (stamp or stamp_N); None if it is not one."""
    stamp, suffix = path.name, 0
    if stamp.count("_") == 2:
        stamp, _, n = stamp.rpartition("_")
        if not n.isdigit():
            return None
        suffix = int(n)
    try:
        return datetime.strptime(stamp, BATCH_FORMAT), suffix
    except ValueError:
        return None


def latest_batch(certs_dir: Path) -> Path:
    """
    Newest batch directory under certs/, by the timestamp in its name
    (modification times are ignored).

    Raises:
        ConfigurationError: If there is no batch yet.
    """
    batches = []
    if certs_dir.is_dir():
        for p in certs_dir.iterdir():
            key = _batch_key(p) if p.is_dir() else None
            if key is not None:
                batches.append((key, p))
    if not batches:
        raise ConfigurationError(f"No signed batches found in {certs_dir}")
    return max(batches)[1]
