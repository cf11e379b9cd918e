"""
Tests for the Request Generator: options.cnf, keys and CSRs per node.
"""

import ipaddress
import os
import stat

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from cert_helper.errors import ConfigurationError
from cert_helper.generator import (
    build_profile, generate_requests, parse_options, render_options,
)
from cert_helper.pem import public_key_digest
from cert_helper.registry import NodeIdentity

from conftest import generator_settings, write_registry


def _csr(layout, safe):
    return x509.load_pem_x509_csr(layout.csr_path(safe).read_bytes())


def test_profile_san_order_with_cluster_suffix():
    """SANs: cn, fqdn, 127.0.0.1, cluster-qualified names, then each alt name and its cluster form."""
    node = NodeIdentity("db1.example.com", ("alias",))
    profile = build_profile(node, [("O", "Acme")], cluster_name="prod")
    assert profile.alt_names == [
        ("DNS", "db1"),
        ("DNS", "db1.example.com"),
        ("IP", "127.0.0.1"),
        ("DNS", "db1.example.com.prod"),
        ("DNS", "db1.prod"),
        ("DNS", "alias"),
        ("DNS", "alias.prod"),
    ]
    assert profile.dn[-1] == ("CN", "db1")


def test_options_round_trip_is_authoritative():
    """parse_options() reads back exactly what render_options() wrote."""
    profile = build_profile(NodeIdentity("db1.example.com"), [("O", "Acme"), ("OU", "A"), ("OU_1", "B")])
    text = render_options(profile)
    assert "DNS.1=db1" in text and "IP.1=127.0.0.1" in text
    again = parse_options(text)
    assert again.dn == profile.dn
    assert again.alt_names == profile.alt_names


def test_generate_requests_builds_expected_csr(layout):
    """DN keeps both OUs and the CN; SAN and EKU are what the CA will copy."""
    write_registry(layout, "db1.example.com\n")
    result = generate_requests(layout, generator_settings())

    assert [o.node.name for o in result.outcomes] == ["db1.example.com"]
    csr = _csr(layout, "db1.example.com")
    assert csr.is_signature_valid
    assert csr.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "Acme"
    assert [a.value for a in csr.subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)] == ["Infra", "SRE"]
    assert csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "db1"

    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["db1", "db1.example.com"]
    assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("127.0.0.1")]
    eku = csr.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.SERVER_AUTH in eku and ExtendedKeyUsageOID.CLIENT_AUTH in eku

    node_dir = layout.node_dir("db1.example.com")
    assert (node_dir / "options.cnf").is_file()
    assert stat.S_IMODE(os.stat(node_dir / "node.key").st_mode) == 0o600


def test_rerun_is_a_no_op(layout):
    """Existing keys are never rotated; files and mtimes stay as they were."""
    write_registry(layout, "db1.example.com\n")
    generate_requests(layout, generator_settings())
    files = [layout.node_dir("db1.example.com") / "node.key",
             layout.node_dir("db1.example.com") / "options.cnf",
             layout.csr_path("db1.example.com")]
    before = [(p.read_bytes(), p.stat().st_mtime_ns) for p in files]

    result = generate_requests(layout, generator_settings())

    assert [(p.read_bytes(), p.stat().st_mtime_ns) for p in files] == before
    assert result.count("key") == 0 and result.count("csr") == 0


def test_edited_options_drive_the_csr(layout):
    """A hand-edited options.cnf is used as-is when the CSR is (re)created."""
    write_registry(layout, "db1.example.com\n")
    generate_requests(layout, generator_settings())
    options = layout.node_dir("db1.example.com") / "options.cnf"
    options.write_text(options.read_text() + "DNS.3=extra.example.com\n")
    layout.csr_path("db1.example.com").unlink()

    generate_requests(layout, generator_settings())

    csr = _csr(layout, "db1.example.com")
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "extra.example.com" in san.get_values_for_type(x509.DNSName)
    key = (layout.node_dir("db1.example.com") / "node.key").read_bytes()
    assert b"PRIVATE KEY" in key


def test_csr_matches_node_key(layout):
    from cryptography.hazmat.primitives import serialization

    write_registry(layout, "db1.example.com\n")
    generate_requests(layout, generator_settings())
    key = serialization.load_pem_private_key(
        (layout.node_dir("db1.example.com") / "node.key").read_bytes(), password=None)
    assert public_key_digest(key.public_key()) == public_key_digest(_csr(layout, "db1.example.com").public_key())


def test_unsafe_node_name_is_sanitized(layout):
    """A wildcard node lands in the sanitized directory and CSR file name."""
    write_registry(layout, "*.example.com\n")
    generate_requests(layout, generator_settings())
    assert (layout.node_dir("_.example.com") / "node.key").is_file()
    assert layout.csr_path("_.example.com").is_file()


def test_missing_registry_creates_nothing(layout):
    layout.base.mkdir(parents=True)
    with pytest.raises(ConfigurationError):
        generate_requests(layout, generator_settings())
    assert not layout.nodes_dir.exists()
    assert not layout.csr_dir.exists()


@pytest.mark.parametrize("template", ["", "   ", ",,", "XYZ=1"])
def test_invalid_template_is_a_configuration_error(layout, template):
    write_registry(layout, "db1.example.com\n")
    with pytest.raises(ConfigurationError):
        generate_requests(layout, generator_settings(dn_template=template))
    assert not layout.nodes_dir.exists()
