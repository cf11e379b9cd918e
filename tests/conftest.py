"""Shared fixtures: temporary working directories and a fully provisioned pipeline."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from cert_helper.arrange import arrange_bundles
from cert_helper.authority import SigningBatch, sign_requests
from cert_helper.config import ArrangeSettings, AuthoritySettings, GeneratorSettings, Layout
from cert_helper.generator import generate_key, generate_requests

TEST_KEY_BITS = 2048    # 4096 is the default; smaller keys keep the suite fast
NODES = "db1.example.com\ndb2.example.com db2-alias\n"


def write_registry(layout: Layout, text: str = NODES) -> Path:
    layout.base.mkdir(parents=True, exist_ok=True)
    layout.registry.write_text(text)
    return layout.registry


def generator_settings(**kw) -> GeneratorSettings:
    kw.setdefault("dn_template", "O=Acme,OU=Infra,OU=SRE")
    kw.setdefault("key_bits", TEST_KEY_BITS)
    return GeneratorSettings(**kw)


def authority_settings(**kw) -> AuthoritySettings:
    kw.setdefault("organization", "Acme")
    kw.setdefault("key_bits", TEST_KEY_BITS)
    return AuthoritySettings(**kw)


def make_cert(subject_cn: str, issuer_cert, issuer_key, key=None, *, not_before=None, not_after=None,
              ca: bool = False, eku=None):
    """Build a certificate directly, for cases the pipeline never produces (expired, odd EKU, ...)."""
    key = key or generate_key(TEST_KEY_BITS)
    now = datetime.now(timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert is not None else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if eku is not None:
        builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=False)
    cert = builder.sign(issuer_key or key, hashes.SHA256())
    return key, cert


@dataclass
class Pipeline:
    layout: Layout
    batch: SigningBatch


def run_pipeline(layout: Layout, use_intermediate: bool = False, registry: str = NODES) -> Pipeline:
    """Registry -> generate -> sign -> arrange, with test-sized keys."""
    write_registry(layout, registry)
    generate_requests(layout, generator_settings())
    batch = sign_requests(layout, authority_settings(use_intermediate=use_intermediate))
    arrange_bundles(layout, ArrangeSettings(certs_dir=batch.directory))
    return Pipeline(layout=layout, batch=batch)


@pytest.fixture
def layout(tmp_path) -> Layout:
    return Layout(tmp_path / "work")


@pytest.fixture
def pipeline(layout) -> Pipeline:
    return run_pipeline(layout)


@pytest.fixture
def chained_pipeline(layout) -> Pipeline:
    return run_pipeline(layout, use_intermediate=True)
