"""Typer CLI for PharmaSeal."""

from pathlib import Path

import typer
from rich.console import Console

app = typer.Typer(name="pharmaseal", help="PharmaSeal: pharmaceutical batch provenance service")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the PharmaSeal API server."""
    import uvicorn
    from pharmaseal.app import create_app

    console.print(f"[bold green]Starting PharmaSeal on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command("register-stakeholder")
def register_stakeholder(
    wallet_address: str = typer.Argument(..., help="0x-prefixed 40-hex wallet address"),
    name: str = typer.Option(..., help="Display name"),
    role: str = typer.Option("REGULATOR", help="Stakeholder role"),
    license_number: str = typer.Option("", help="Operating license number"),
):
    """Register an already-active stakeholder directly in the database."""
    import asyncio

    from pharmaseal.common.exceptions import PharmaSealError
    from pharmaseal.deps import get_db, get_stakeholder_service

    async def _register():
        db = get_db()
        await db.init()
        await db.create_all()
        try:
            async with db.get_session() as session:
                return await get_stakeholder_service().register(
                    session, wallet_address, name, role,
                    license_number=license_number, is_active=True,
                )
        finally:
            await db.close()

    try:
        stakeholder, credential = asyncio.run(_register())
    except PharmaSealError as e:
        console.print(f"[bold red]{e.code}[/bold red] — {e.message}")
        raise typer.Exit(1)

    console.print(f"[bold green]Registered[/bold green] {stakeholder.wallet_address} as {stakeholder.role}")
    console.print(f"  Credential (shown once): [bold]{credential}[/bold]")


@app.command("hash")
def hash_document(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Batch document"),
    batch_id: str = typer.Option(None, help="Batch id, to also print the linkage hash"),
):
    """Compute content (and linkage) hashes offline, no DB required."""
    from pharmaseal.common.exceptions import ValidationError
    from pharmaseal.hashing.engine import content_hash, linkage_hash

    digest = content_hash(path.read_bytes())
    console.print(f"content_hash  [bold]{digest}[/bold]")
    if batch_id:
        try:
            console.print(f"linkage_hash  [bold]{linkage_hash(batch_id, digest)}[/bold]")
        except ValidationError as e:
            console.print(f"[bold red]{e.code}[/bold red] — {e.message}")
            raise typer.Exit(1)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check PharmaSeal server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()["data"]
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except (httpx.HTTPError, KeyError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
