"""
Tests for the Verification Engine.

Each test starts from a correctly provisioned working directory (the
`pipeline` fixture runs generate -> sign -> arrange) and then breaks one
thing, checking that exactly the expected check reports it and that the
other nodes are still verified.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from cert_helper.authority import intermediate_paths, root_paths
from cert_helper.config import Layout, VerifySettings
from cert_helper.errors import ConfigurationError
from cert_helper.generator import generate_key, key_to_pem
from cert_helper.pem import load_certificates, to_pem
from cert_helper.verify import (
    FAIL, PASS, WARN, chain_expiry_results, expiry_result, verify_chain, verify_nodes,
)

from conftest import make_cert, run_pipeline

SETTINGS = VerifySettings(workers=2)
NOW = datetime(2030, 6, 1, tzinfo=timezone.utc)


def _reports(summary):
    return {r.node: r for r in summary.reports}


def _statuses(report, name):
    return [c.status for c in report.checks if c.name == name]


def _files(layout, node="db1.example.com"):
    d = layout.node_dir(node)
    return d / "node.key", d / "node.crt", d / "web.pem"


def test_provisioned_nodes_pass(pipeline):
    """A fresh pipeline passes every check on every node."""
    summary = verify_nodes(pipeline.layout, SETTINGS)

    assert summary.ok
    assert (summary.total, summary.passed, summary.failed) == (2, 2, 0)
    report = _reports(summary)["db1.example.com"]
    names = {c.name for c in report.checks}
    assert {"key-match", "csr-match", "chain", "bundle", "usage", "expiry",
            "bundle-chain", "san", "pem", "duplicates"} <= names
    assert not report.warnings
    assert any("Node name (db1.example.com) found in SAN" in c.message for c in report.checks)
    assert summary.registry_warnings == []


def test_anchor_reordered_before_certificate_fails(pipeline):
    """key + anchor + leaf is a structural failure, and the other node is still verified."""
    key, cert, bundle = _files(pipeline.layout)
    bundle.write_bytes(key.read_bytes() + pipeline.layout.anchor.read_bytes() + cert.read_bytes())

    summary = verify_nodes(pipeline.layout, SETTINGS)

    reports = _reports(summary)
    assert FAIL in _statuses(reports["db1.example.com"], "bundle")
    assert reports["db2.example.com"].ok
    assert (summary.failed, summary.passed) == (1, 1)
    assert not summary.ok


def test_certificate_before_key_fails(pipeline):
    key, cert, bundle = _files(pipeline.layout)
    bundle.write_bytes(cert.read_bytes() + key.read_bytes() + pipeline.layout.anchor.read_bytes())
    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]
    assert any(c.status == FAIL and "certificates before key" in c.message for c in report.checks)


def test_bundle_with_two_keys_fails(pipeline):
    key, cert, bundle = _files(pipeline.layout)
    bundle.write_bytes(key.read_bytes() + key.read_bytes() + cert.read_bytes())
    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]
    assert any(c.status == FAIL and "2 private keys" in c.message for c in report.checks)


def test_mismatched_key_fails_key_and_csr_checks(pipeline):
    key, _, _ = _files(pipeline.layout)
    key.write_bytes(key_to_pem(generate_key(2048)))

    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]

    assert _statuses(report, "key-match") == [FAIL]
    assert _statuses(report, "csr-match") == [FAIL]


def test_missing_certificate_ends_node_checks(pipeline):
    _, cert, _ = _files(pipeline.layout)
    cert.unlink()
    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]
    assert [(c.name, c.status) for c in report.checks] == [("files", FAIL)]


def test_missing_bundle_fails(pipeline):
    _, _, bundle = _files(pipeline.layout)
    bundle.unlink()
    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]
    assert any(c.status == FAIL and c.message == "web.pem not found" for c in report.checks)
    assert _statuses(report, "chain") == [PASS]


def test_duplicate_certificate_is_only_a_warning(pipeline):
    key, cert, bundle = _files(pipeline.layout)
    anchor = pipeline.layout.anchor.read_bytes()
    bundle.write_bytes(key.read_bytes() + cert.read_bytes() + anchor + anchor)

    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]

    assert _statuses(report, "duplicates") == [WARN]
    assert report.ok


def test_corrupted_bundle_is_a_pem_failure(pipeline):
    key, cert, bundle = _files(pipeline.layout)
    broken = cert.read_bytes().replace(b"-----END CERTIFICATE-----\n", b"")
    bundle.write_bytes(key.read_bytes() + broken)

    report = _reports(verify_nodes(pipeline.layout, SETTINGS))["db1.example.com"]

    assert FAIL in _statuses(report, "pem")
    assert not report.ok


def test_foreign_anchor_fails_chain(pipeline, tmp_path):
    """Certificates from our CA do not chain to an unrelated root."""
    _, other = make_cert("Other Root", None, None, ca=True)
    pipeline.layout.anchor.write_bytes(to_pem(other))

    summary = verify_nodes(pipeline.layout, SETTINGS)

    for report in summary.reports:
        assert _statuses(report, "chain") == [FAIL]
        assert _statuses(report, "bundle-chain") == [FAIL]
    assert summary.failed == 2


def test_missing_client_auth_fails_usage(pipeline):
    """EKU without clientAuth fails; missing key usage bits only warn."""
    layout = pipeline.layout
    ca_key = serialization.load_pem_private_key(root_paths(layout).key.read_bytes(), password=None)
    ca_cert = load_certificates(root_paths(layout).cert.read_bytes())[0]
    key_path, cert_path, _ = _files(layout)
    node_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    _, cert = make_cert("db1", ca_cert, ca_key, key=node_key, eku=[ExtendedKeyUsageOID.SERVER_AUTH])
    cert_path.write_bytes(to_pem(cert))

    report = _reports(verify_nodes(layout, SETTINGS))["db1.example.com"]

    assert _statuses(report, "usage") == [PASS, FAIL, WARN, WARN]
    assert _statuses(report, "chain") == [PASS]
    assert _statuses(report, "san") == [WARN]


def test_registry_drift_is_reported_as_warnings(pipeline):
    layout = pipeline.layout
    layout.registry.write_text("db1.example.com\ndb3.example.com\n")

    summary = verify_nodes(layout, SETTINGS)

    assert any("missing certificate: db3.example.com" in w for w in summary.registry_warnings)
    assert any("not in" in w and "db2.example.com" in w for w in summary.registry_warnings)
    assert summary.ok


def test_missing_registry_only_warns(pipeline):
    pipeline.layout.registry.unlink()
    summary = verify_nodes(pipeline.layout, SETTINGS)
    assert summary.ok
    assert "skipping consistency check" in summary.registry_warnings[0]


def test_single_node_and_unknown_node(pipeline):
    summary = verify_nodes(pipeline.layout, VerifySettings(node="db2.example.com"))
    assert [r.node for r in summary.reports] == ["db2.example.com"]
    with pytest.raises(ConfigurationError, match="Node directory not found"):
        verify_nodes(pipeline.layout, VerifySettings(node="nope.example.com"))


def test_missing_tree_or_anchor_is_a_configuration_error(pipeline, tmp_path):
    with pytest.raises(ConfigurationError):
        verify_nodes(Layout(tmp_path / "empty"), SETTINGS)
    pipeline.layout.anchor.unlink()
    with pytest.raises(ConfigurationError, match="CA certificate not found"):
        verify_nodes(pipeline.layout, SETTINGS)


def test_verbose_adds_details(pipeline):
    summary = verify_nodes(pipeline.layout, VerifySettings(verbose=True, node="db1.example.com"))
    details = summary.reports[0].details
    assert details[0] == "subject=O=Acme,OU=Infra,OU=SRE,CN=db1"
    assert any(line.startswith("subjectAltName=DNS:db1") for line in details)


def test_intermediate_chain_passes(chained_pipeline):
    """With ca-chain.crt as anchor every node passes and the anchor holds two certificates."""
    summary = verify_nodes(chained_pipeline.layout, SETTINGS)
    assert summary.ok, [c for r in summary.reports for c in r.failures]
    assert any("2 certificates" in c.message for c in summary.anchor_checks)
    report = _reports(summary)["db1.example.com"]
    assert len(_statuses(report, "expiry")) == 3     # leaf, then intermediate and root from web.pem


def test_wildcard_node_uses_registry_name(layout):
    """The sanitized directory maps back to '*.example.com' for the SAN check."""
    run_pipeline(layout, registry="*.example.com\n")
    report = verify_nodes(layout, SETTINGS).reports[0]
    assert report.node == "_.example.com"
    assert any("Node name (*.example.com) found in SAN" in c.message for c in report.checks)


# ---------- expiry classification ----------

@pytest.fixture(scope="module")
def expiry_certs():
    def cert(days_left, days_since=30):
        _, c = make_cert("x", None, None, not_before=NOW - timedelta(days=days_since),
                         not_after=NOW + timedelta(days=days_left))
        return c
    return {"expired": cert(-1), "soon": cert(10), "far": cert(400),
            "future": cert(400, days_since=-5)}


def test_expiry_thresholds(expiry_certs):
    assert expiry_result(expiry_certs["expired"], "c", 30, NOW).status == FAIL
    assert "EXPIRED" in expiry_result(expiry_certs["expired"], "c", 30, NOW).message
    assert expiry_result(expiry_certs["soon"], "c", 30, NOW).status == WARN
    assert expiry_result(expiry_certs["far"], "c", 30, NOW).status == PASS
    assert expiry_result(expiry_certs["future"], "c", 30, NOW).status == FAIL
    assert expiry_result(expiry_certs["soon"], "c", 5, NOW).status == PASS


def test_every_certificate_of_a_chain_is_evaluated(expiry_certs):
    results = chain_expiry_results([expiry_certs["far"], expiry_certs["expired"]], "ca.crt", 30, NOW)
    assert [r.status for r in results] == [PASS, FAIL]
    assert "[cert 2/2]" in results[1].message


def test_expired_node_certificate_fails(pipeline):
    layout = pipeline.layout
    ca_key = serialization.load_pem_private_key(root_paths(layout).key.read_bytes(), password=None)
    ca_cert = load_certificates(root_paths(layout).cert.read_bytes())[0]
    key_path, cert_path, _ = _files(layout)
    node_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    now = datetime.now(timezone.utc)
    _, cert = make_cert("db1", ca_cert, ca_key, key=node_key, not_before=now - timedelta(days=20),
                        not_after=now - timedelta(days=1))
    cert_path.write_bytes(to_pem(cert))

    report = _reports(verify_nodes(layout, SETTINGS))["db1.example.com"]

    assert _statuses(report, "expiry")[0] == FAIL
    assert _statuses(report, "chain") == [FAIL]


# ---------- path building ----------

def test_issuer_must_be_a_ca():
    root_key, root = make_cert("Root", None, None, ca=True)
    mid_key, mid = make_cert("Not a CA", root, root_key, ca=False)
    _, leaf = make_cert("leaf", mid, mid_key)
    with pytest.raises(ValueError, match="not a CA"):
        verify_chain(leaf, [root], [mid])
    assert len(verify_chain(mid, [root])) == 2


def test_path_length_of_intermediate_is_enforced(chained_pipeline):
    """The intermediate (pathlen 0) may sign leaves but not another CA."""
    ipaths = intermediate_paths(chained_pipeline.layout)
    inter_key = serialization.load_pem_private_key(ipaths.key.read_bytes(), password=None)
    inter = load_certificates(ipaths.cert.read_bytes())[0]
    root = load_certificates(root_paths(chained_pipeline.layout).cert.read_bytes())[0]
    sub_key, sub = make_cert("Sub CA", inter, inter_key, ca=True)
    _, leaf = make_cert("leaf", sub, sub_key)

    assert len(verify_chain(sub, [root], [inter])) == 3
    with pytest.raises(ValueError, match="path length"):
        verify_chain(leaf, [root], [inter, sub])
