from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import typer

from .arrange import arrange_bundles, latest_batch
from .authority import sign_requests
from .config import DEFAULT_REGISTRY, Layout, Settings, load_settings, override
from .errors import CertHelperError
from .generator import generate_requests
from .verify import FAIL, PASS, WARN, CheckResult, VerificationSummary, verify_nodes

app = typer.Typer(help="Provision and audit X.509 certificates for cluster nodes.", no_args_is_help=True)

_MARKS = {PASS: ("✓", typer.colors.GREEN), WARN: ("⚠", typer.colors.YELLOW), FAIL: ("✗", typer.colors.RED)}
_RULE = "=" * 42


@dataclass
class State:
    layout: Layout
    settings: Settings


def _fail(message: str) -> None:
    typer.secho(f"** Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _state(ctx: typer.Context) -> State:
    return ctx.obj


@app.callback()
def main_callback(
    ctx: typer.Context,
    base_dir: Path = typer.Option(Path("."), "-C", "--dir", help="Working directory holding nodes/, csr/, CA/ and certs/"),
    nodes_file: str = typer.Option(DEFAULT_REGISTRY, "-f", "--nodes-file", help="Node registry file"),
    settings_file: Path | None = typer.Option(None, "--settings", help="YAML settings file"),
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Global options shared by every command."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="** %(levelname)s %(name)s: %(message)s",
        force=True,
    )
    try:
        settings = load_settings(settings_file)
    except CertHelperError as e:
        _fail(str(e))
    ctx.obj = State(layout=Layout(base_dir, nodes_file), settings=settings)


@app.command("generate-csr")
def generate_csr(
    ctx: typer.Context,
    dn_template: str | None = typer.Option(None, "-d", "--dn", help='Base Distinguished Name, e.g. "O=Acme,OU=Infra"'),
    cluster_name: str | None = typer.Option(None, "-c", "--cluster", help="Cluster name appended to DNS names"),
    key_bits: int | None = typer.Option(None, "-b", "--key-bits", help="RSA key size (default: 4096)"),
    workers: int | None = typer.Option(None, "--workers", help="Nodes processed in parallel"),
):
    """Generate options.cnf, private key and CSR for every node in the registry."""
    state = _state(ctx)
    try:
        settings = override(state.settings.generate, dn_template=dn_template, cluster_name=cluster_name,
                            key_bits=key_bits, workers=workers)
        result = generate_requests(state.layout, settings)
    except CertHelperError as e:
        _fail(str(e))
    typer.echo(f"** Processed {len(result.outcomes)} node(s): {result.count('key')} new key(s), "
               f"{result.count('csr')} new CSR(s)")
    typer.echo(f"** CSRs are in {state.layout.csr_dir}")


@app.command("self-sign")
def self_sign(
    ctx: typer.Context,
    organization: str | None = typer.Option(None, "-o", "--org", help="Organization name for the CA (default: YDB)"),
    cert_days: int | None = typer.Option(None, "-d", "--days", help="Certificate validity days (default: 825)"),
    use_intermediate: bool = typer.Option(False, "-i", "--intermediate", help="Sign with an intermediate CA (creates a chain)"),
    resign: bool = typer.Option(False, "--resign", help="Sign requests again even if already signed"),
    key_bits: int | None = typer.Option(None, "-b", "--key-bits", help="RSA key size for new CA keys"),
):
    """Create or reuse the CA and sign every pending CSR into a new batch."""
    state = _state(ctx)
    try:
        settings = override(state.settings.sign, organization=organization, cert_days=cert_days,
                            key_bits=key_bits, use_intermediate=use_intermediate or None,
                            resign=resign or None)
        batch = sign_requests(state.layout, settings)
    except CertHelperError as e:
        _fail(str(e))
    for node, serial in batch.issued:
        typer.echo(f"   {node}: serial {serial:X}")
    typer.echo(f"** Signed {len(batch.issued)} certificate(s) with the {batch.signer} CA")
    typer.echo(f"** Certificates are in {batch.directory}")


@app.command("arrange")
def arrange(
    ctx: typer.Context,
    certs_dir: Path | None = typer.Option(None, "-d", "--certs-dir", help="Directory with signed certificates (default: newest batch in certs/)"),
    ca_cert: Path | None = typer.Option(None, "-c", "--ca-cert", help="CA certificate file (copied to nodes/ca.crt)"),
    copy_keys: bool = typer.Option(False, "-k", "--copy-keys", help="Copy private keys from the certificates directory"),
):
    """Deploy a batch of signed certificates into the node directories."""
    state = _state(ctx)
    try:
        settings = override(state.settings.arrange, certs_dir=certs_dir, ca_cert=ca_cert,
                            copy_keys=copy_keys or None)
        if settings.certs_dir is None:
            settings = override(settings, certs_dir=latest_batch(state.layout.certs_dir))
            typer.echo(f"** Using newest batch: {settings.certs_dir}")
        result = arrange_bundles(state.layout, settings)
    except CertHelperError as e:
        _fail(str(e))
    for node, reason in result.skipped:
        typer.secho(f"** Skipped {node}: {reason}", fg=typer.colors.YELLOW)
    typer.echo(f"** Deployed {len(result.deployed)} certificate(s)")
    if result.anchor is not None:
        typer.echo(f"** CA certificate copied to: {state.layout.anchor}")


def _echo_check(check: CheckResult) -> None:
    mark, color = _MARKS[check.status]
    typer.secho(f"{mark} {check.message}", fg=color)


def render_summary(summary: VerificationSummary, anchor: Path) -> None:
    typer.echo(_RULE)
    typer.echo("Certificate Verification")
    typer.echo(_RULE)
    typer.echo(f"CA Certificate: {anchor}")
    for check in summary.anchor_checks:
        _echo_check(check)
    for warning in summary.registry_warnings:
        _echo_check(CheckResult("registry", WARN, warning))

    for report in summary.reports:
        typer.echo("")
        typer.echo(_RULE)
        typer.echo(f"Verifying node: {report.node}")
        typer.echo(_RULE)
        for check in report.checks:
            _echo_check(check)
        if report.details:
            typer.echo("Certificate Details:")
            for line in report.details:
                typer.echo(f"  {line}")
        if report.ok:
            _echo_check(CheckResult("node", PASS, f"All checks passed for {report.node}"))
        else:
            _echo_check(CheckResult("node", FAIL, f"Found {len(report.failures)} error(s) for {report.node}"))

    typer.echo("")
    typer.echo(_RULE)
    typer.echo("Verification Summary")
    typer.echo(_RULE)
    typer.echo(f"Total nodes checked: {summary.total}")
    typer.echo(f"Passed: {summary.passed}")
    typer.echo(f"Failed: {summary.failed}")
    if summary.ok:
        _echo_check(CheckResult("summary", PASS, "All certificates are valid!"))
    else:
        _echo_check(CheckResult("summary", FAIL, "Some certificates have issues. Please review the errors above."))


@app.command("verify")
def verify(
    ctx: typer.Context,
    node: str | None = typer.Option(None, "-n", "--node", help="Verify this node only"),
    warning_days: int | None = typer.Option(None, "-w", "--warn-days", help="Days before expiry to warn (default: 30)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Show certificate details"),
    workers: int | None = typer.Option(None, "--workers", help="Nodes verified in parallel"),
):
    """Verify keys, certificates and bundles of every node against nodes/ca.crt."""
    state = _state(ctx)
    try:
        settings = override(state.settings.verify, node=node, warning_days=warning_days,
                            verbose=verbose or None, workers=workers)
        summary = verify_nodes(state.layout, settings)
    except CertHelperError as e:
        _fail(str(e))
    render_summary(summary, state.layout.anchor)
    if not summary.ok:
        raise typer.Exit(code=1)


@app.command("make-test-certs")
def make_test_certs(
    ctx: typer.Context,
    organization: str = typer.Option("YDB", "-o", "--org", help="Organization for the CA and the node DN"),
    use_intermediate: bool = typer.Option(False, "-i", "--intermediate", help="Sign with an intermediate CA"),
    key_bits: int | None = typer.Option(None, "-b", "--key-bits", help="RSA key size"),
):
    """Generate, sign and arrange certificates for a test cluster in one go."""
    state = _state(ctx)
    try:
        gen = override(state.settings.generate, dn_template=state.settings.generate.dn_template or f"O={organization}",
                       key_bits=key_bits)
        generate_requests(state.layout, gen)
        sign = override(state.settings.sign, organization=organization, key_bits=key_bits,
                        use_intermediate=use_intermediate or None)
        batch = sign_requests(state.layout, sign)
        placed = arrange_bundles(state.layout, override(state.settings.arrange, certs_dir=batch.directory))
    except CertHelperError as e:
        _fail(str(e))
    typer.echo(f"** Signed batch: {batch.directory}")
    typer.echo(f"** Deployed {len(placed.deployed)} certificate(s) into {state.layout.nodes_dir}")


def main():
    app()


if __name__ == "__main__":
    main()
