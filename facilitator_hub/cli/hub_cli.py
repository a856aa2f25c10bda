#!/usr/bin/env python3
"""
hub: operator CLI for Facilitator Hub
Inspect networks and facilitators, check funding, run the API server.

Usage:
    hub networks [--json]
    hub facilitators [--network base-sepolia] [--json]
    hub check <facilitator_id> [--json]
    hub balance <address> --network <network> [--json]
    hub serve

Exit status is 0 on success, 1 when the hub returns an error and 2 when it is unreachable.
"""

import argparse
import asyncio
import json as json_lib
import sys
from typing import Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from facilitator_hub.config import get_hub_config

console = Console()

STATUS_STYLES = {
    "active": "green",
    "needs_funding": "yellow",
    "inactive": "red",
}


class HubCLI:
    """CLI wrapper over the hub HTTP API"""

    def __init__(self, json_output: bool = False, base_url: Optional[str] = None):
        self.config = get_hub_config()
        self.client = httpx.AsyncClient(timeout=60.0)
        self.base_url = (base_url or self.config.hub_url).rstrip("/")
        self.json_output = json_output
        # Non-zero once any request fails, so scripts can branch on it
        self.exit_code = 0

    def _output(self, data: dict, human_message: str = None):
        """Output data in JSON or human-readable format"""
        if self.json_output:
            print(json_lib.dumps(data, indent=2, default=str))
        elif human_message:
            console.print(human_message)

    async def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            self._output({"error": str(e)}, f"[red]Hub unreachable: {e}[/red]")
            self.exit_code = 2
            return None

        try:
            data = response.json()
        except ValueError:
            data = {"error": {"message": response.text or f"HTTP {response.status_code}"}}
        if response.is_error:
            error = data.get("error", {}) if isinstance(data, dict) else {}
            message = error.get("message") if isinstance(error, dict) else None
            message = message or str(data)
            self._output(data, f"[red]{message}[/red]")
            self.exit_code = 1
            return None
        return data

    async def networks(self):
        data = await self._request("GET", "/api/v1/networks")
        if data is None:
            return
        if self.json_output:
            self._output(data)
            return

        table = Table(title="Supported Networks", show_header=True, header_style="bold cyan")
        table.add_column("Network", style="cyan")
        table.add_column("Chain ID", justify="right")
        table.add_column("Token")
        table.add_column("Domain")
        table.add_column("Recommended", justify="right", style="green")
        for network in data["networks"]:
            table.add_row(
                network["network_id"],
                str(network["chain_id"]),
                network["token_address"],
                f'{network["domain"]["name"]} v{network["domain"]["version"]}',
                f'{network["recommended_balance"]} {network["native_symbol"]}',
            )
        console.print(table)

    async def facilitators(self, network: Optional[str] = None):
        params = {"network": network} if network else {}
        data = await self._request("GET", "/api/v1/facilitators", params=params)
        if data is None:
            return
        if self.json_output:
            self._output(data)
            return

        table = Table(title=f"Facilitators ({data['count']})", show_header=True, header_style="bold yellow")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Network")
        table.add_column("Status")
        table.add_column("Gas Balance", justify="right")
        table.add_column("Settlements", justify="right")
        for facilitator in data["facilitators"]:
            status = facilitator["status"]
            style = STATUS_STYLES.get(status, "white")
            table.add_row(
                facilitator["id"],
                facilitator["name"],
                facilitator.get("network_id") or "-",
                f"[{style}]{status}[/{style}]",
                facilitator.get("gas_balance") or "-",
                str(facilitator["total_settlements"]),
            )
        console.print(table)

    async def check(self, facilitator_id: str):
        data = await self._request("POST", f"/api/v1/facilitators/{facilitator_id}/check")
        if data is None:
            return
        style = STATUS_STYLES.get(data["status"], "white")
        changed = " (updated)" if data.get("status_changed") else ""
        self._output(data, Panel(
            f"[bold]Wallet:[/bold] {data['address']}\n"
            f"[bold]Network:[/bold] {data['network_id']}\n"
            f"[bold]Balance:[/bold] {data['balance']} {data['native_symbol']}"
            f" (recommended {data['recommended_balance']})\n"
            f"[bold]Status:[/bold] [{style}]{data['status']}[/{style}]{changed}",
            title=f"Funding check: {facilitator_id}",
            border_style=style,
        ))

    async def balance(self, address: str, network: str):
        data = await self._request(
            "GET", "/api/v1/facilitators/balance", params={"address": address, "network": network}
        )
        if data is None:
            return
        funded = "[green]funded[/green]" if data["is_funded"] else "[yellow]needs funding[/yellow]"
        self._output(
            data,
            f"{data['address']} on {data['network_id']}: {data['balance']} {data['native_symbol']} ({funded})",
        )

    async def close(self):
        await self.client.aclose()


def main():
    parser = argparse.ArgumentParser(
        prog="hub",
        description="Facilitator Hub CLI - gasless x402 settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hub networks
  hub facilitators --network base-sepolia
  hub check fac_0123456789abcdef --json
  hub balance 0xabc... --network avalanche-fuji
  hub serve
        """
    )

    # Global --json flag
    parser.add_argument("--json", "-j", action="store_true", help="Output in JSON format (for scripting/agents)")
    parser.add_argument("--url", help="Hub API base URL (defaults to HUB_URL)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("networks", help="List supported networks")

    facilitators_parser = subparsers.add_parser("facilitators", help="List facilitators")
    facilitators_parser.add_argument("--network", "-n", help="Only this network")

    check_parser = subparsers.add_parser("check", help="Check and reconcile a facilitator's funding")
    check_parser.add_argument("facilitator_id", help="Facilitator ID")

    balance_parser = subparsers.add_parser("balance", help="Native balance of an address")
    balance_parser.add_argument("address", help="Wallet address")
    balance_parser.add_argument("--network", "-n", required=True, help="Network id")

    subparsers.add_parser("serve", help="Run the API server")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        from facilitator_hub.api.server import main as serve
        serve()
        return

    async def run() -> int:
        cli = HubCLI(json_output=args.json, base_url=args.url)
        try:
            if args.command == "networks":
                await cli.networks()
            elif args.command == "facilitators":
                await cli.facilitators(network=args.network)
            elif args.command == "check":
                await cli.check(args.facilitator_id)
            elif args.command == "balance":
                await cli.balance(args.address, args.network)
        finally:
            await cli.close()
        return cli.exit_code

    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
