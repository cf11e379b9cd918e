"""
Tests for the settings file and CLI overrides.
"""

from pathlib import Path

import pytest

from cert_helper.config import (
    AuthoritySettings, GeneratorSettings, Layout, VerifySettings, load_settings, override,
)
from cert_helper.errors import ConfigurationError


def test_defaults_without_file():
    settings = load_settings(None)
    assert settings.generate.key_bits == 4096
    assert settings.sign.organization == "YDB"
    assert settings.sign.cert_days is None
    assert settings.verify.warning_days == 30


def test_file_seeds_sections(tmp_path):
    path = tmp_path / "settings.yml"
    path.write_text(
        "generate:\n  dn_template: O=Acme\n  cluster_name: prod\n"
        "sign:\n  organization: Acme\n  use_intermediate: true\n"
        "arrange:\n  certs_dir: certs/batch\n"
    )
    settings = load_settings(path)
    assert settings.generate.cluster_name == "prod"
    assert settings.sign.use_intermediate
    assert settings.arrange.certs_dir == Path("certs/batch")
    assert settings.verify == VerifySettings()


@pytest.mark.parametrize("text, message", [
    ("bogus: {}\n", "Unknown settings sections"),
    ("sign:\n  colour: blue\n", "Unknown keys"),
    ("- a\n- b\n", "must contain a mapping"),
    ("generate: [1, 2]\n", "must be a mapping"),
    ("sign: {key_bits: 512}\n", "key_bits"),
    ("generate: {dn_template: [\n", "not valid YAML"),
])
def test_invalid_files(tmp_path, text, message):
    path = tmp_path / "settings.yml"
    path.write_text(text)
    with pytest.raises(ConfigurationError, match=message):
        load_settings(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(tmp_path / "nope.yml")


def test_override_ignores_unset_values():
    base = GeneratorSettings(dn_template="O=Acme", cluster_name="prod")
    changed = override(base, cluster_name=None, key_bits=2048)
    assert changed.cluster_name == "prod"
    assert changed.key_bits == 2048
    assert base.key_bits == 4096


def test_override_validates():
    with pytest.raises(ConfigurationError):
        override(AuthoritySettings(), cert_days=0)


def test_layout_paths(tmp_path):
    layout = Layout(tmp_path)
    assert layout.registry == tmp_path / "ca-nodes.txt"
    assert layout.anchor == tmp_path / "nodes" / "ca.crt"
    assert layout.csr_path("_.example.com") == tmp_path / "csr" / "_.example.com.csr"
    assert Layout(tmp_path, "/etc/nodes.txt").registry == Path("/etc/nodes.txt")
