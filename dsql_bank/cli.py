"""
Command line tools.

``loadtest`` fires random transfers at the deployed function (Lambda, or the
HTTP app with ``--url``) from several threads and prints success, error and
latency statistics. ``seed`` bulk-loads accounts and writes their ids to a
file that ``loadtest --uuids`` reads back.
"""

import asyncio
import json
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import boto3
import click
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .database import Database
from .scenarios.seed import ID_TYPES, AccountSeeder

SUCCESS = "success"
ERROR = "error"
INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass
class Stats:
    success_count: int = 0
    error_count: int = 0
    insufficient_balance_count: int = 0
    total_latency_ms: float = 0.0

    def __post_init__(self):
        self._lock = threading.Lock()

    def record(self, kind: str, latency_ms: float = 0.0):
        with self._lock:
            if kind == SUCCESS:
                self.success_count += 1
                self.total_latency_ms += latency_ms
            elif kind == INSUFFICIENT_BALANCE:
                self.insufficient_balance_count += 1
            else:
                self.error_count += 1

    @property
    def average_latency_ms(self) -> Optional[float]:
        if not self.success_count:
            return None
        return self.total_latency_ms / self.success_count


def classify_response(body: str) -> Tuple[str, float]:
    """(kind, latency in ms) for one raw response payload."""
    try:
        data = json.loads(body)
    except ValueError:
        data = None

    if isinstance(data, dict) and "transaction_time" in data:
        latency = str(data["transaction_time"])
        try:
            return SUCCESS, float(latency[:-2] if latency.endswith("ms") else latency)
        except ValueError:
            return SUCCESS, 0.0

    if "Insufficient balance" in body:
        return INSUFFICIENT_BALANCE, 0.0
    return ERROR, 0.0


def random_transfer(rng: random.Random, accounts: int, uuids: List[str]) -> dict:
    """Payload for a transfer between two distinct random accounts."""
    if uuids:
        payer, payee = rng.sample(uuids, 2)
    else:
        payer, payee = rng.sample(range(1, accounts + 1), 2)
    amount = round(rng.uniform(0.01, 10.00), 2)
    return {"payer_id": payer, "payee_id": payee, "amount": amount}


def split_iterations(iters: int, threads: int) -> List[Tuple[int, int, int]]:
    """(thread id, first, last) with 1-based inclusive bounds, remainder to the last thread."""
    per_thread, remainder = divmod(iters, threads)
    ranges = []
    start = 1
    for thread_id in range(1, threads + 1):
        end = start + per_thread - 1 + (remainder if thread_id == threads else 0)
        ranges.append((thread_id, start, end))
        start = end + 1
    return ranges


class LambdaInvoker:
    def __init__(self, function_name: str, client=None):
        self.function_name = function_name
        self.client = client or boto3.client("lambda")

    def __call__(self, payload: dict) -> str:
        response = self.client.invoke(
            FunctionName=self.function_name,
            Payload=json.dumps(payload).encode(),
        )
        return response["Payload"].read().decode("utf-8", errors="replace")


class HttpInvoker:
    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = 30):
        self.url = url.rstrip("/") + "/transfer"
        self.session = session or requests.Session()
        self.timeout = timeout

    def __call__(self, payload: dict) -> str:
        return self.session.post(self.url, json=payload, timeout=self.timeout).text


def run_invocations(
    invoke: Callable[[dict], str],
    thread_id: int,
    first: int,
    last: int,
    total: int,
    accounts: int,
    uuids: List[str],
    stats: Stats,
    stop: threading.Event,
) -> int:
    rng = random.Random()
    completed = 0
    for i in range(first, last + 1):
        if stop.is_set():
            break
        payload = random_transfer(rng, accounts, uuids)
        try:
            body = invoke(payload)
        except (requests.RequestException, BotoCoreError, ClientError, OSError) as e:
            stats.record(ERROR)
            click.echo(
                f"[Thread {thread_id}: {i}/{total}] Error transferring {payload['amount']} "
                f"from account {payload['payer_id']} to {payload['payee_id']}: {e}",
                err=True,
            )
        else:
            kind, latency_ms = classify_response(body)
            stats.record(kind, latency_ms)
            click.echo(
                f"[Thread {thread_id}: {i}/{total}] Transferring {payload['amount']} "
                f"from account {payload['payer_id']} to {payload['payee_id']} => {body}"
            )
        completed += 1
    return completed


def print_stats(stats: Stats, completed: int):
    click.echo()
    click.echo(f"Completed {completed} invocations")
    click.echo()
    click.echo("Results:")
    click.echo(f"  Success: {stats.success_count}")
    click.echo(f"  Errors:  {stats.error_count}")
    click.echo(f"  Insufficient balance: {stats.insufficient_balance_count}")
    if stats.average_latency_ms is not None:
        click.echo(f"  Avg latency: {stats.average_latency_ms:.3f}ms")


def load_uuids(path: Path, limit: int) -> List[str]:
    lines = [line.strip() for line in path.read_text().splitlines()]
    return [line for line in lines if line][:limit]


@click.group()
def cli():
    """DSQL bank tools."""


@cli.command()
@click.argument("function", required=False)
@click.option("--url", help="Base URL of the HTTP app, used instead of a Lambda function.")
@click.option("--iters", default=1000, show_default=True, help="Number of invocations.")
@click.option("--threads", default=1, show_default=True, help="Number of parallel threads.")
@click.option("--accounts", default=1000, show_default=True, help="Number of accounts (1 to N).")
@click.option("--uuids", "use_uuids", is_flag=True, help="Use ids from the uuid file instead of integers.")
@click.option("--uuid-file", default="uuids.txt", show_default=True, type=click.Path(path_type=Path))
def loadtest(function, url, iters, threads, accounts, use_uuids, uuid_file):
    """Invoke FUNCTION with random account transfers."""
    if not function and not url:
        raise click.UsageError("Give a Lambda FUNCTION name or --url")
    if threads < 1 or iters < 1:
        raise click.UsageError("--iters and --threads must be positive")

    uuids: List[str] = []
    if use_uuids:
        uuids = load_uuids(uuid_file, accounts)
        click.echo(f"Using {len(uuids)} UUIDs from {uuid_file}")
        if len(uuids) < 2:
            raise click.UsageError(f"Need at least two ids in {uuid_file}")
    elif accounts < 2:
        raise click.UsageError("--accounts must be at least 2")

    invoke = HttpInvoker(url) if url else LambdaInvoker(function)
    click.echo(f"Running {iters} invocations across {threads} thread(s)")

    stats = Stats()
    stop = threading.Event()
    started = time.perf_counter()
    with ThreadPoolExecutor(max_workers=threads) as executor:
        futures = [
            executor.submit(run_invocations, invoke, thread_id, first, last, iters, accounts, uuids, stats, stop)
            for thread_id, first, last in split_iterations(iters, threads)
        ]
        try:
            completed = sum(future.result() for future in futures)
        except KeyboardInterrupt:
            click.echo()
            click.echo("Interrupted! Aborting remaining tasks...")
            stop.set()
            completed = sum(future.result() for future in futures)

    print_stats(stats, completed)
    click.echo(f"  Wall time: {time.perf_counter() - started:.3f}s")


@cli.command()
@click.option("--table", default="accounts2", show_default=True)
@click.option("--id-type", type=click.Choice(ID_TYPES), default="uuid", show_default=True)
@click.option("--batches", default=1000, show_default=True, help="Insert transactions to run.")
@click.option("--batch-size", default=1000, show_default=True, help="Accounts per transaction.")
@click.option("--balance", default="100", show_default=True, help="Starting balance of every account.")
@click.option("--workers", default=1, show_default=True, help="Concurrent connections.")
@click.option("--output", default="uuids.txt", show_default=True, type=click.Path(path_type=Path))
def seed(table, id_type, batches, batch_size, balance, workers, output):
    """Recreate the accounts table and bulk-load accounts."""

    async def _seed():
        database = Database.from_config()
        try:
            seeder = AccountSeeder(database, table=table, id_type=id_type)
            return await seeder.seed(batches, batch_size, Decimal(balance), workers)
        finally:
            await database.close_pool()

    click.echo("Setting up database...")
    ids = asyncio.run(_seed())
    output.write_text("".join(f"{account_id}\n" for account_id in ids))
    click.echo(f"Setup complete! Generated {len(ids)} ids in {output}")


if __name__ == "__main__":
    cli()
