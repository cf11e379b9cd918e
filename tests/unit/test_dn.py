"""
Tests for DN template parsing and Name construction.
"""

import pytest
from cryptography.x509.oid import NameOID

from cert_helper import dn


def test_repeated_ou_gets_numbered():
    """Every OU after the first receives a numeric suffix, in order of appearance."""
    pairs = dn.parse_dn_template("O=Acme, OU=Infra ,OU=SRE,OU=Oncall")
    assert pairs == [("O", "Acme"), ("OU", "Infra"), ("OU_1", "SRE"), ("OU_2", "Oncall")]


def test_empty_keys_and_values_are_skipped():
    assert dn.parse_dn_template("O=Acme,=x,OU=,,C = NL") == [("O", "Acme"), ("C", "NL")]


def test_long_attribute_names_are_accepted():
    pairs = dn.parse_dn_template("organizationName=Acme,organizationalUnitName=A,organizationalUnitName=B")
    name = dn.to_name(dn.node_dn(pairs, "db1"))
    assert dn.get_attribute(name, NameOID.ORGANIZATION_NAME) == "Acme"
    assert [a.value for a in name.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)] == ["A", "B"]


def test_node_cn_is_appended_last_and_template_cn_dropped():
    pairs = dn.node_dn([("O", "Acme"), ("CN", "ignored")], "db1")
    assert pairs == [("O", "Acme"), ("CN", "db1")]


def test_name_str_keeps_certificate_order():
    name = dn.to_name([("O", "Acme"), ("OU", "Infra"), ("OU_1", "SRE"), ("CN", "db1")])
    assert dn.name_str(name) == "O=Acme,OU=Infra,OU=SRE,CN=db1"


def test_unknown_attribute_is_rejected():
    with pytest.raises(ValueError, match="Unknown DN attribute"):
        dn.to_name([("XYZ", "value")])
