"""
Distinguished Name templates.

A template is a comma separated list of Key=Value pairs, using either the
short OpenSSL names (C, ST, L, O, OU, CN) or the long attribute names
(countryName, organizationalUnitName, ...). Repeated organizational units are
kept as distinct attributes: every OU after the first gets a numeric suffix
(OU, OU_1, OU_2, ...) so it survives as its own key in options.cnf.
"""

from __future__ import annotations

import logging
import re

from cryptography import x509
from cryptography.x509.oid import NameOID

LOGGER = logging.getLogger(__name__)

ATTRIBUTES: dict[str, x509.ObjectIdentifier] = {
    "C": NameOID.COUNTRY_NAME,
    "countryName": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "stateOrProvinceName": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "localityName": NameOID.LOCALITY_NAME,
    "street": NameOID.STREET_ADDRESS,
    "streetAddress": NameOID.STREET_ADDRESS,
    "postalCode": NameOID.POSTAL_CODE,
    "O": NameOID.ORGANIZATION_NAME,
    "organizationName": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "organizationalUnitName": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "commonName": NameOID.COMMON_NAME,
    "DC": NameOID.DOMAIN_COMPONENT,
    "domainComponent": NameOID.DOMAIN_COMPONENT,
    "emailAddress": NameOID.EMAIL_ADDRESS,
    "serialNumber": NameOID.SERIAL_NUMBER,
    "title": NameOID.TITLE,
    "GN": NameOID.GIVEN_NAME,
    "givenName": NameOID.GIVEN_NAME,
    "SN": NameOID.SURNAME,
    "surname": NameOID.SURNAME,
    "initials": NameOID.INITIALS,
    "pseudonym": NameOID.PSEUDONYM,
    "UID": NameOID.USER_ID,
    "dnQualifier": NameOID.DN_QUALIFIER,
    "businessCategory": NameOID.BUSINESS_CATEGORY,
}

# Short names used when rendering a Name back to text.
_SHORT = {
    NameOID.COUNTRY_NAME: "C",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.LOCALITY_NAME: "L",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.COMMON_NAME: "CN",
    NameOID.DOMAIN_COMPONENT: "DC",
}

_OU_KEYS = ("OU", "organizationalUnitName")
_CN_KEYS = ("CN", "commonName")
_SUFFIX_RE = re.compile(r"_\d+$")


def parse_dn_template(template: str) -> list[tuple[str, str]]:
    """
    Split a DN template into ordered (key, value) pairs.

    Whitespace around keys and values is trimmed; pairs with an empty key or
    value are dropped. Every OU after the first gets a numeric suffix.

    Args:
        template (str): e.g. "O=Acme,OU=Infra,OU=SRE".

    Returns:
        list[tuple[str, str]]: e.g. [("O", "Acme"), ("OU", "Infra"), ("OU_1", "SRE")].
    """
    pairs: list[tuple[str, str]] = []
    ou_count = 0
    for part in template.split(","):
        key, _, value = part.partition("=")
        key, value = key.strip(), value.strip()
        if not key or not value:
            continue
        if key in _OU_KEYS:
            if ou_count:
                key = f"{key}_{ou_count}"
            ou_count += 1
        pairs.append((key, value))
    return pairs


def node_dn(template_pairs: list[tuple[str, str]], common_name: str) -> list[tuple[str, str]]:
    """
    Append the node's CN to the template pairs.

    A CN already present in the template is dropped, since the node CN is
    always the last RDN.
    """
    pairs = []
    for key, value in template_pairs:
        if base_key(key) in _CN_KEYS:
            LOGGER.warning("Ignoring %s=%s from the DN template; CN comes from the node name", key, value)
            continue
        pairs.append((key, value))
    pairs.append(("CN", common_name))
    return pairs


def base_key(key: str) -> str:
    """Strip the numeric suffix added to repeated attributes ("OU_2" -> "OU")."""
    return _SUFFIX_RE.sub("", key)


def attribute_oid(key: str) -> x509.ObjectIdentifier:
    """
    Resolve a template key (short, long, or suffixed) to its OID.

    Raises:
        ValueError: If the attribute name is unknown.
    """
    try:
        return ATTRIBUTES[base_key(key)]
    except KeyError:
        raise ValueError(f"Unknown DN attribute: {key}")


def to_name(pairs: list[tuple[str, str]]) -> x509.Name:
    """
    Build an x509.Name with one RDN per pair, in order.

    Raises:
        ValueError: On unknown attributes or values the attribute does not
            accept (e.g. a country code that is not two letters).
    """
    return x509.Name([x509.NameAttribute(attribute_oid(k), v) for k, v in pairs])


def name_str(name: x509.Name) -> str:
    """
    Render an x509.Name into a compact 'O=Org,OU=Unit,CN=Name' style string.

    Attributes keep their certificate order; OIDs without a short key fall
    back to the OID's own name.
    """
    parts = []
    for attr in name:
        key = _SHORT.get(attr.oid, attr.oid._name)
        parts.append(f"{key}={attr.value}")
    return ",".join(parts)


def get_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> str | None:
    """First value of an attribute, or None if absent."""
    attrs = name.get_attributes_for_oid(oid)
    return str(attrs[0].value) if attrs else None
