"""
Synthetic relay data for load-testing relaysync.

Implements deterministic pseudo-random relay generation, CSV emission, and
Postgres COPY loading, so the pre-rendered alias export can be exercised
against millions of rows.
"""

from __future__ import annotations

import csv
import json
import random
import sys
import tempfile
import time
from pathlib import Path

import psycopg
import typer

from relaysync.config import get_settings
from relaysync.domain.models import SHARED_OWNER, ConnectionDescriptor
from relaysync.infrastructure.db_factory import build_dsn

app = typer.Typer(help="Generate synthetic relays and load them into Postgres (CSV + COPY).")

CSV_HEADER = ["alias", "destination", "description", "enabled", "deleted", "whitelist"]
DOMAINS = ["relay.example.org", "mail.example.net", "alias.example.com"]
DESTINATIONS = ["inbox.example.org", "people.example.net", "corp.example.com"]


def _build_dsn(dsn_override: str | None) -> str:
    if dsn_override:
        return dsn_override
    return build_dsn(ConnectionDescriptor.parse(get_settings().db_uri))


def _generate_relays_csv(
    csv_path: Path,
    rows: int,
    batch_size: int,
    seed: int,
    disabled_ratio: float = 0.1,
) -> None:
    rng = random.Random(seed)

    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)

        buffer: list[list[str]] = []
        for i in range(rows):
            # The index keeps aliases unique whatever the RNG draws.
            alias = f"r{i:08d}.{rng.randrange(16**6):06x}@{rng.choice(DOMAINS)}"
            destination = f"user{rng.randint(1, 1_000_000)}@{rng.choice(DESTINATIONS)}"
            enabled = rng.random() >= disabled_ratio
            deleted = rng.random() < disabled_ratio / 2
            whitelist = [f"*@{rng.choice(DOMAINS)}"] if rng.random() < 0.2 else []
            buffer.append(
                [
                    alias,
                    destination,
                    "generated",
                    "t" if enabled else "f",
                    "t" if deleted else "f",
                    json.dumps(whitelist),
                ]
            )
            if len(buffer) >= batch_size:
                writer.writerows(buffer)
                buffer.clear()
        if buffer:
            writer.writerows(buffer)


def _copy_into_db(dsn: str, csv_path: Path) -> int:
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            for domain in DOMAINS:
                cur.execute(
                    "INSERT INTO domains (name, owner_id) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (domain, SHARED_OWNER),
                )
            with cur.copy(
                """
                COPY relays (alias, destination, description, enabled, deleted, whitelist)
                FROM STDIN WITH (FORMAT csv, HEADER TRUE)
                """
            ) as copy:
                with csv_path.open("r", encoding="utf-8") as f:
                    for line in f:
                        copy.write(line)
            conn.commit()
    return 0


@app.command()
def main(
    rows: int = typer.Option(100_000, "--rows", "-r", help="Number of relays to generate."),
    batch_size: int = typer.Option(
        10_000, "--batch-size", "-b", help="Batch size for CSV buffering during generation."
    ),
    seed: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
    disabled_ratio: float = typer.Option(
        0.1, "--disabled-ratio", help="Share of relays generated disabled."
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Optional CSV output path (if omitted, a temp file will be used)."
    ),
    dsn: str | None = typer.Option(None, "--dsn", help="Optional DSN override for Postgres."),
    no_load: bool = typer.Option(False, "--no-load", help="Only generate CSV; skip loading."),
) -> None:
    """
    Generate synthetic relays and optionally load them into Postgres using COPY.
    """
    start = time.perf_counter()
    if output:
        csv_path = output
        csv_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        tmpdir = Path(tempfile.mkdtemp(prefix="relaysync_csv_"))
        csv_path = tmpdir / "relays.csv"

    typer.echo(f"Generating {rows:,} relays -> {csv_path} (batch={batch_size}, seed={seed})")
    _generate_relays_csv(
        csv_path, rows=rows, batch_size=batch_size, seed=seed, disabled_ratio=disabled_ratio
    )
    gen_duration = time.perf_counter() - start
    typer.echo(f"CSV generation completed in {gen_duration:.2f}s")

    if no_load:
        typer.echo("Skipping load (no-load flag set).")
        return

    load_start = time.perf_counter()
    typer.echo("Loading CSV into Postgres via COPY...")
    _copy_into_db(_build_dsn(dsn), csv_path)
    load_duration = time.perf_counter() - load_start
    typer.echo(
        f"Load completed in {load_duration:.2f}s. "
        f"Total time {time.perf_counter() - start:.2f}s."
    )


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
