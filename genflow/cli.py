import asyncio
import json
import logging
import sys
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import typer


app = typer.Typer(help="genflow: run one generator job behind a small HTTP control/polling API")

DEFAULT_URL = "http://127.0.0.1:8888/"


def _request(url: str, method: str = "GET", query: Optional[Dict[str, Any]] = None,
             payload: Optional[dict] = None, timeout: float = 5.0) -> Any:
    if query:
        url = url + "?" + urlencode(query)
    data = json.dumps(payload).encode() if payload is not None else None
    req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        raw = e.read()
    except urllib.error.URLError as e:
        typer.echo(json.dumps({"error": f"cannot reach {url}: {e.reason}"}), err=True)
        raise typer.Exit(code=1)
    if not raw:
        return {}
    try:
        return json.loads(raw.decode())
    except ValueError:
        return {"raw": raw.decode(errors="ignore")}


def _echo(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, ensure_ascii=False))


@app.command()
def serve(
    dir: Optional[str] = typer.Option(None, "--dir", help="Project directory to run in (defaults to CWD)", metavar="PATH"),
    host: Optional[str] = typer.Option(None, help="HTTP host (default from config, else 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, help="HTTP port (default from config, else 8888)"),
    worker: Optional[str] = typer.Option(None, "--worker", help="Worker script to run for each job", metavar="FILE"),
    python: Optional[str] = typer.Option(None, "--python", help="Interpreter used to run the worker"),
    accounts_dir: Optional[str] = typer.Option(None, "--accounts-dir", help="Folder holding the account inventories", metavar="PATH"),
    daemon: bool = typer.Option(False, "--daemon", help="Run in background and log to .genflow/server.log"),
    yes: bool = typer.Option(False, "--yes", help="Auto-confirm prompts like adding .genflow to .gitignore"),
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
):
    """Serve the control/polling API for one project.

    - Creates a `.genflow/` state directory under the project root.
    - Reads `.genflow/config.yaml` and `.genflow/rules.yaml` when present.
    - Offers to add `.genflow` to `.gitignore` if a Git repo is detected.
    """
    from .config import load_settings
    from .runtime import run_server, daemonize
    from .util import STATE_DIR_NAME, project_root_from_cwd, ensure_state_dir, is_git_repo, add_to_gitignore, is_in_gitignore

    project = Path(dir).resolve() if dir else project_root_from_cwd()
    state = ensure_state_dir(project)

    if is_git_repo(project) and state == project / STATE_DIR_NAME:
        gi = project / ".gitignore"
        if is_in_gitignore(project, STATE_DIR_NAME):
            typer.echo(f"{STATE_DIR_NAME} already present in {gi}")
        elif yes or typer.confirm(f"Add '{STATE_DIR_NAME}' to {gi}?"):
            if add_to_gitignore(project, STATE_DIR_NAME):
                typer.echo(f"Added {STATE_DIR_NAME} to {gi}")

    settings = load_settings(state / "config.yaml").override(
        host=host, port=port, worker_script=worker, python=python, accounts_dir=accounts_dir,
    )
    settings = replace(settings, state_dir=str(state)).resolve_paths(project)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if daemon:
        log_file = state / "server.log"
        typer.echo(f"Starting daemon, logging to {log_file}")
        daemonize()
        sys.stdout = open(log_file, "a", buffering=1)
        sys.stderr = open(log_file, "a", buffering=1)
        logging.getLogger().handlers[:] = [logging.StreamHandler(sys.stderr)]

    asyncio.run(run_server(settings))


@app.command()
def start(
    region: str = typer.Option("", help="Region code passed to the worker"),
    name_prefix: str = typer.Option("KNX", "--name-prefix"),
    password_prefix: str = typer.Option("KNX", "--password-prefix"),
    count: int = typer.Option(100, "--count", help="Number of accounts to generate"),
    threads: int = typer.Option(5, "--threads"),
    rarity: int = typer.Option(4, "--rarity", help="Rarity threshold"),
    auto_activation: bool = typer.Option(False, "--auto-activation"),
    turbo: bool = typer.Option(False, "--turbo"),
    url: str = typer.Option(DEFAULT_URL, help="API URL"),
):
    """Start a job on the running server."""
    config = {
        "region": region,
        "name_prefix": name_prefix,
        "password_prefix": password_prefix,
        "account_count": count,
        "thread_count": threads,
        "rarity_threshold": rarity,
        "auto_activation": auto_activation,
        "turbo_mode": turbo,
    }
    _echo(_request(url, "POST", payload={"action": "start", "config": config}))


@app.command()
def stop(url: str = typer.Option(DEFAULT_URL, help="API URL")):
    """Stop the running job (no-op when idle)."""
    _echo(_request(url, "POST", payload={"action": "stop"}))


@app.command()
def stats(url: str = typer.Option(DEFAULT_URL, help="API URL")):
    """Show the current progress counters."""
    _echo(_request(url, query={"action": "stats"}))


@app.command()
def logs(url: str = typer.Option(DEFAULT_URL, help="API URL"),
         limit: int = typer.Option(50, help="Show at most this many of the returned entries")):
    """Show recent worker output."""
    entries = _request(url, query={"action": "logs"})
    if isinstance(entries, list):
        for e in entries[-limit:] if limit > 0 else []:
            typer.echo(f"[{e.get('timestamp')}] {e.get('type', 'info'):<10} {e.get('message')}")
    else:
        _echo(entries)


@app.command()
def accounts(tab: str = typer.Option("all", help="all | rare | couples | activated"),
             url: str = typer.Option(DEFAULT_URL, help="API URL")):
    """List generated accounts for a tab."""
    _echo(_request(url, query={"action": "accounts", "tab": tab}))


@app.command()
def status(url: str = typer.Option(DEFAULT_URL, help="API URL")):
    """Report whether a job handle exists."""
    _echo(_request(url.rstrip("/") + "/status"))


def main():
    """Entry point for console_scripts."""
    app()


if __name__ == "__main__":
    app()
