"""Velo command line: artifact setup, proving, notes, split planning and the relayer server."""

import json
import logging
import random
import sys
from pathlib import Path
from typing import Optional

import click

from velo import __version__
from velo.circuit.withdraw import WithdrawInputs
from velo.config import get_settings
from velo.core.commitment import Note
from velo.core.pools import PoolSize
from velo.exceptions import ProofError, VeloError
from velo.proving.backend import ProofBundle, get_backend
from velo.proving.pipeline import ProofPipeline
from velo.scheduler.split import describe, plan_split


def print_json(data: dict) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def fail(message: str, code: int = 1) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(code)


def make_pipeline(artifacts: Optional[str], backend: Optional[str], depth: Optional[int]) -> ProofPipeline:
    settings = get_settings()
    return ProofPipeline(
        artifacts_dir=artifacts or settings.artifacts_dir,
        backend=get_backend(backend or settings.proving_backend, settings.snarkjs_bin),
        depth=depth or settings.merkle_depth,
        environment=settings.environment,
    )


pipeline_options = [
    click.option("--artifacts", type=click.Path(file_okay=False), help="Artifacts directory"),
    click.option("--backend", type=click.Choice(["local", "snarkjs"]), help="Proving backend"),
    click.option("--depth", type=int, help="Merkle tree depth"),
]


def with_pipeline_options(func):
    for option in reversed(pipeline_options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr")
def cli(verbose):
    """Velo: fixed-denomination privacy pools."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Proof artifacts
@cli.command()
@with_pipeline_options
@click.option("--power", type=int, help="Universal setup size exponent (local generation only)")
@click.option("--ptau", type=click.Path(dir_okay=False), help="Import universal parameters from a ceremony file")
@click.option("--ptau-sha256", help="Published SHA-256 of the ceremony file")
def setup(artifacts, backend, depth, power, ptau, ptau_sha256):
    """Run universal and circuit setup, writing all proof artifacts."""
    settings = get_settings()
    pipeline = make_pipeline(artifacts, backend, depth)
    try:
        if ptau:
            pipeline.import_universal(ptau, ptau_sha256 or settings.ceremony_sha256)
        elif not pipeline.universal_path.exists():
            pipeline.universal_setup(power or settings.universal_power)
        manifest = pipeline.circuit_setup()
    except VeloError as e:
        fail(str(e))
    print_json(manifest)


@cli.command()
@with_pipeline_options
def status(artifacts, backend, depth):
    """Show which proof artifacts exist."""
    print_json(make_pipeline(artifacts, backend, depth).status())


@cli.command()
@with_pipeline_options
@click.argument("inputs_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--out", "-o", type=click.Path(dir_okay=False), help="Write the proof bundle here")
def prove(artifacts, backend, depth, inputs_file, out):
    """Prove a withdrawal from a JSON file of circuit inputs."""
    pipeline = make_pipeline(artifacts, backend, depth)
    try:
        inputs = WithdrawInputs.from_dict(json.loads(Path(inputs_file).read_text()))
        bundle = pipeline.prove(inputs)
    except (KeyError, ValueError) as e:
        fail(f"Invalid inputs file: {e}")
    except ProofError as e:
        fail(str(e))

    if out:
        Path(out).write_text(json.dumps(bundle.to_dict(), indent=2))
        click.echo(f"Proof written to {out}")
    else:
        print_json(bundle.to_dict())


@cli.command()
@with_pipeline_options
@click.argument("proof_file", type=click.Path(exists=True, dir_okay=False))
def verify(artifacts, backend, depth, proof_file):
    """Verify a proof bundle against its public signals."""
    pipeline = make_pipeline(artifacts, backend, depth)
    try:
        bundle = ProofBundle.from_dict(json.loads(Path(proof_file).read_text()))
        valid = pipeline.verify_bundle(bundle)
    except (KeyError, ValueError) as e:
        fail(f"Invalid proof file: {e}")
    except ProofError as e:
        fail(str(e))

    if not valid:
        fail("Proof is INVALID")
    click.echo(click.style("Proof is valid", fg="green"))


# Notes
@cli.group()
def note():
    """Create and inspect deposit notes."""
    pass


@note.command("new")
@click.option("--pool", "pool", type=click.Choice([p.value for p in PoolSize]), default=PoolSize.SMALL.value,
              show_default=True)
def note_new(pool):
    """Generate a fresh note. Keep the printed note string secret."""
    fresh = Note.generate(PoolSize(pool))
    click.echo(fresh.encode())
    click.echo(f"commitment: {fresh.commitment_hex}", err=True)


@note.command("inspect")
@click.argument("note_string")
def note_inspect(note_string):
    """Show the commitment and nullifier hash of a note."""
    try:
        parsed = Note.decode(note_string)
    except VeloError as e:
        fail(str(e))
    data = parsed.to_dict()
    for key in ("nullifier", "secret"):
        data.pop(key)
    print_json(data)


# Splits
@cli.command()
@click.argument("amount")
@click.option("--strict", is_flag=True, help="Fail if part of the amount cannot be covered")
@click.option("--seed", type=int, help="Seed for a reproducible plan")
@click.option("--json", "as_json", is_flag=True, help="Print the full plan as JSON")
def split(amount, strict, seed, as_json):
    """Plan fixed-denomination withdrawals for AMOUNT SOL."""
    rng = random.Random(seed) if seed is not None else None
    try:
        plan = plan_split(amount, strict=strict, rng=rng)
    except (ValueError, VeloError) as e:
        fail(str(e))

    if as_json:
        print_json(plan.to_dict())
    else:
        click.echo(describe(plan))


# Relayer
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host, port, reload):
    """Run the relayer HTTP API."""
    import uvicorn

    uvicorn.run("velo.api.routes:create_app", factory=True, host=host, port=port, reload=reload)


@cli.command()
@click.argument("client_id")
@click.option("--minutes", type=int, help="Token lifetime")
def token(client_id, minutes):
    """Issue a bearer token for the relay endpoints."""
    from datetime import timedelta

    from velo.security.auth import create_relay_token

    settings = get_settings()
    value, expires = create_relay_token(
        client_id, settings.jwt_secret, timedelta(minutes=minutes or settings.jwt_expire_minutes)
    )
    click.echo(value)
    click.echo(f"expires: {expires.isoformat()}", err=True)


if __name__ == "__main__":
    cli()
