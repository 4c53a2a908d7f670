#!/usr/bin/env python3
"""
lp-swarm CLI
============

Usage:
    lp-swarm init
    lp-swarm wallets --balances
    lp-swarm withdraw --amount 0.5 --wait
    lp-swarm distribute
    lp-swarm run --wallet 1 --resume
    lp-swarm run-multi --concurrency 3
    lp-swarm rebalance
    lp-swarm status
    lp-swarm nonce --reset

Global flags: --config, --dry-run, --log-level.
"""

import os
import sys
import asyncio
import argparse
import getpass
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml
from web3 import Web3
from rich import box
from rich.panel import Panel
from rich.table import Table

from .chain import TransactionSender, Web3Chain
from .clients import (
    CcxtExchangeClient, LiFiBridgeClient, UniswapV3PoolClient, ZeroXSwapClient, withdraw_to_hub,
)
from .config import Config, ConfigManager, DEFAULT_CONFIG, SECRET_FIELDS, ENCRYPTED_PREFIX
from .distributor import DistributionResult, HubDistributor
from .errors import BotError, ConfigurationError, DistributionError, InvalidParamsError
from .mutex import WalletMutexManager
from .orchestrator import WalletOrchestrator
from .runner import BatchResult, MultiWalletRunner
from .state import StateStore
from .utils import console, format_address, format_eth, format_tx_hash, setup_logging
from .wallets import WalletRecord, WalletRegistry

PASSWORD_ENV = "LP_SWARM_PASSWORD"


def print_banner():
    console.print(Panel("lp-swarm: hub -> satellites -> bridge / swap / LP", style="bold cyan", box=box.DOUBLE))


def get_password(prompt: str = "Enter config password: ", confirm: bool = False) -> str:
    """Password from LP_SWARM_PASSWORD or an interactive prompt."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    console.print(f"[yellow]{prompt}[/yellow]")
    password = getpass.getpass("> ")
    if len(password) < 8:
        raise ConfigurationError("Password must be at least 8 characters")
    if confirm:
        console.print("[yellow]Confirm password:[/yellow]")
        if getpass.getpass("> ") != password:
            raise ConfigurationError("Passwords don't match")
    return password


def load_config(args) -> Config:
    """YAML file (if present) overlaid with environment variables and CLI flags."""
    base = None
    manager = ConfigManager(Path(args.config))
    if manager.config_path.exists():
        raw = manager.read_raw_config()
        encrypted = any(str(raw.get(n) or "").startswith(ENCRYPTED_PREFIX) for n in SECRET_FIELDS)
        base = manager.load_config(get_password() if encrypted else None)

    config = Config.from_env(os.environ, base=base)
    if args.dry_run:
        config.dry_run = True
    if args.log_level:
        config.log_level = args.log_level
    if getattr(args, "concurrency", None):
        config.max_concurrency = args.concurrency
    return config


@dataclass
class Services:
    """Everything a command needs, wired once from the Config."""
    config: Config
    registry: WalletRegistry
    hub: WalletRecord
    satellites: List[WalletRecord]
    store: StateStore
    source_chain: Web3Chain
    dest_chain: Web3Chain
    source_sender: TransactionSender
    dest_sender: TransactionSender
    distributor: HubDistributor

    def satellite(self, index: int) -> WalletRecord:
        for wallet in self.satellites:
            if wallet.index == index:
                return wallet
        raise InvalidParamsError(f"Wallet index {index} is not a configured satellite")

    def orchestrator(self) -> WalletOrchestrator:
        config = self.config
        config.validate(require_workflow=True)
        return WalletOrchestrator(
            store=self.store,
            bridge=LiFiBridgeClient(config.lifi_api_key, config.lifi_integrator,
                                    poll_interval=config.bridge_poll_seconds),
            swap=ZeroXSwapClient(config.dest_chain_id, config.zerox_api_key),
            pool=UniswapV3PoolClient(self.dest_chain, self.dest_sender,
                                     config.pool_address, config.position_manager_address),
            source_sender=self.source_sender,
            dest_sender=self.dest_sender,
            params=config.workflow_params(),
            rebalance_policy=config.rebalance_policy(),
            step_policy=config.retry_policy(),
        )


def derive_swarm(registry: WalletRegistry, config: Config):
    hub = registry.create_or_load_wallet(config.seed_phrase, config.hub_wallet_index, label="hub")
    satellites = registry.create_multiple_wallets(
        config.seed_phrase, config.wallet_count, config.satellite_start_index
    )
    return hub, satellites


def build_services(config: Config) -> Services:
    config.validate()
    mutexes = WalletMutexManager()
    registry = WalletRegistry(mutexes)
    hub, satellites = derive_swarm(registry, config)

    source_chain = Web3Chain(config.source_rpc_url, config.source_chain_id, name="source")
    dest_chain = Web3Chain(config.dest_rpc_url, config.dest_chain_id, name="dest")
    source_sender = TransactionSender(
        source_chain, registry.nonce_manager,
        gas_price_override=config.gas_price_wei,
        receipt_timeout=config.receipt_timeout_seconds,
    )
    # Each chain has its own nonce sequence per address
    dest_registry = WalletRegistry()
    derive_swarm(dest_registry, config)
    dest_sender = TransactionSender(
        dest_chain, dest_registry.nonce_manager,
        receipt_timeout=config.receipt_timeout_seconds,
    )

    distributor = HubDistributor(
        source_chain, source_sender, hub,
        min_transfer_wei=config.min_transfer_wei,
        variance=config.variance,
        mutexes=mutexes,
    )
    return Services(
        config=config, registry=registry, hub=hub, satellites=satellites,
        store=StateStore(config.state_dir), source_chain=source_chain, dest_chain=dest_chain,
        source_sender=source_sender, dest_sender=dest_sender, distributor=distributor,
    )


def print_distribution(title: str, result: DistributionResult):
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("#", style="cyan")
    table.add_column("Tx", style="dim")
    for i, tx_hash in enumerate(result.tx_hashes):
        table.add_row(str(i + 1), format_tx_hash(tx_hash))
    console.print(table)
    console.print(
        f"[green]{result.funded_count} transfers, {format_eth(result.total_sent_wei)} sent"
        f"{' (dry run)' if result.dry_run else ''}[/green]"
    )
    for address, error in result.failures:
        console.print(f"[red]✗ {format_address(address)}: {error}[/red]")


def print_batch(batch: BatchResult):
    table = Table(title="Wallet Results", box=box.ROUNDED)
    table.add_column("#", style="cyan")
    table.add_column("Wallet", style="dim")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Error", style="red")
    for result in batch.results:
        status = "[green]✓ success[/green]" if result.success else f"[red]✗ {result.status.value}[/red]"
        error = f"{result.error_code.value}: {result.error}" if result.error_code else ""
        table.add_row(
            str(result.index), format_address(result.wallet), status,
            ", ".join(result.steps) or "-", error,
        )
    console.print(table)
    console.print(f"Total {batch.total}: [green]{batch.successful} succeeded[/green], "
                  f"[red]{batch.failed} failed[/red]")


# Commands

async def init_command(args, config: Config) -> int:
    manager = ConfigManager(Path(args.config))
    if manager.config_path.exists() and not args.force:
        raise ConfigurationError(f"{manager.config_path} already exists (use --force to overwrite)")

    data = yaml.safe_load(DEFAULT_CONFIG)
    console.print("[yellow]Enter the seed phrase the wallets are derived from:[/yellow]")
    data["seed_phrase"] = getpass.getpass("> ").strip()
    password = get_password("Create encryption password: ", confirm=True)

    created = manager.create_config(data, password)
    registry = WalletRegistry()
    hub = registry.create_or_load_wallet(created.seed_phrase, created.hub_wallet_index, label="hub")
    console.print(f"[green]✓ Configuration written to {manager.config_path}[/green]")
    console.print(f"Hub wallet: {hub.address}")
    return 0


async def wallets_command(args, config: Config) -> int:
    services = build_services(config)
    table = Table(title="Derived Wallets", box=box.ROUNDED)
    table.add_column("Label", style="cyan")
    table.add_column("Index")
    table.add_column("Address", style="dim")
    if args.balances:
        table.add_column("Source", style="green")
        table.add_column("Destination", style="green")

    for wallet in [services.hub] + services.satellites:
        row = [wallet.label, str(wallet.index), wallet.address]
        if args.balances:
            row.append(format_eth(await services.source_chain.get_balance(wallet.address)))
            row.append(format_eth(await services.dest_chain.get_balance(wallet.address)))
        table.add_row(*row)
    console.print(table)
    return 0


async def withdraw_command(args, config: Config) -> int:
    services = build_services(config)
    exchange = CcxtExchangeClient(config.exchange_id, config.exchange_api_key, config.exchange_api_secret)
    try:
        result = await withdraw_to_hub(
            exchange, services.hub.address, args.amount,
            config.withdraw_token, config.withdraw_network, dry_run=config.dry_run,
        )
    finally:
        await exchange.close()
    console.print(f"[green]✓ Withdrawal {result.withdrawal_id}: {result.status}[/green]")

    if args.wait and not config.dry_run:
        min_balance = Web3.to_wei(args.wait_min or args.amount * 0.9, "ether")
        await services.distributor.wait_for_hub_funding(
            min_balance,
            timeout=config.hub_funding_timeout_seconds,
            poll_interval=config.hub_funding_poll_seconds,
        )
    return 0


async def distribute_command(args, config: Config) -> int:
    services = build_services(config)
    addresses = [w.address for w in services.satellites]

    if args.top_up:
        result = await services.distributor.top_up_satellites(
            addresses, config.min_native_balance_wei, config.gas_top_up_target_wei,
            dry_run=config.dry_run,
        )
    else:
        try:
            result = await services.distributor.distribute(addresses, dry_run=config.dry_run)
        except DistributionError as e:
            if e.result is not None:
                print_distribution("Confirmed Before Failure", e.result)
            raise
    print_distribution("Distribution", result)
    return 0


async def sweep_command(args, config: Config) -> int:
    services = build_services(config)
    result = await services.distributor.sweep_to_hub(
        services.satellites, keep_wei=config.sweep_keep_wei, dry_run=config.dry_run
    )
    print_distribution("Sweep to Hub", result)
    return 1 if result.failures and args.fail_on_error else 0


async def run_command(args, config: Config) -> int:
    services = build_services(config)
    wallet = services.satellite(args.wallet)
    result = await services.orchestrator().run(
        wallet, resume=args.resume, fresh=args.fresh, dry_run=config.dry_run
    )
    result.index = wallet.index
    print_batch(BatchResult([result]))
    return 0 if result.success or not args.fail_on_error else 1


async def run_multi_command(args, config: Config) -> int:
    services = build_services(config)
    runner = MultiWalletRunner(
        services.orchestrator(),
        max_concurrency=config.max_concurrency,
        wallet_pause=config.wallet_pause_seconds,
        batch_pause=config.batch_pause_seconds,
    )
    batch = await runner.run_all(
        services.satellites, resume=args.resume, fresh=args.fresh,
        dry_run=config.dry_run, sequential=args.sequential,
    )
    print_batch(batch)
    return 1 if batch.failed and args.fail_on_error else 0


async def rebalance_command(args, config: Config) -> int:
    services = build_services(config)
    orchestrator = services.orchestrator()
    wallets = [services.satellite(args.wallet)] if args.wallet is not None else services.satellites

    table = Table(title="Rebalance", box=box.ROUNDED)
    table.add_column("Wallet", style="dim")
    table.add_column("Decision")
    table.add_column("Detail")
    failures = 0
    for wallet in wallets:
        if not services.store.has_state(wallet.address):
            continue
        try:
            outcome = await orchestrator.rebalance_position(wallet, dry_run=config.dry_run)
        except BotError as e:
            failures += 1
            table.add_row(format_address(wallet.address), "[red]error[/red]", str(e))
            continue
        reason = outcome.decision.reason.value if outcome.decision.reason else "HOLD"
        label = f"[green]{reason}[/green]" if outcome.executed else reason
        table.add_row(format_address(wallet.address), label, outcome.decision.detail)
    console.print(table)
    return 1 if failures and args.fail_on_error else 0


async def status_command(args, config: Config) -> int:
    store = StateStore(config.state_dir)
    table = Table(title=f"Wallet States ({config.state_dir})", box=box.ROUNDED)
    table.add_column("Wallet", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Bridge")
    table.add_column("Swap")
    table.add_column("Position")
    table.add_column("Collected")
    for state in store.list_states():
        position = state.position
        table.add_row(
            state.wallet,
            state.current_step.value,
            state.bridge_result.status if state.bridge_result else "-",
            format_tx_hash(state.swap_result.tx_hash) if state.swap_result else "-",
            f"#{position.token_id} [{position.lower_tick}, {position.upper_tick}]" if position else "-",
            f"{state.collect_result.amount0}/{state.collect_result.amount1}" if state.collect_result else "-",
        )
    console.print(table)
    return 0


async def reset_command(args, config: Config) -> int:
    services = build_services(config)
    wallets = services.satellites if args.all else [services.satellite(args.wallet)]
    deleted = sum(1 for w in wallets if services.store.delete_state(w.address))
    console.print(f"[green]Deleted {deleted} state file(s)[/green]")
    return 0


async def nonce_command(args, config: Config) -> int:
    services = build_services(config)
    chain = services.dest_chain if args.chain == "dest" else services.source_chain
    sender = services.dest_sender if args.chain == "dest" else services.source_sender

    table = Table(title=f"Nonces on {chain.name} chain", box=box.ROUNDED)
    table.add_column("Wallet", style="cyan")
    table.add_column("Latest")
    table.add_column("Pending")
    table.add_column("Stuck", style="yellow")
    table.add_column("Local")
    for wallet in [services.hub] + services.satellites:
        latest = await chain.get_transaction_count(wallet.address, "latest")
        pending = await chain.get_transaction_count(wallet.address, "pending")
        manager = sender.nonce_lookup(wallet.address)
        if args.reset:
            await manager.reset(pending)
        table.add_row(wallet.label, str(latest), str(pending), str(pending - latest), str(manager.current_nonce))
    console.print(table)
    return 0


COMMANDS = {
    "init": init_command,
    "wallets": wallets_command,
    "withdraw": withdraw_command,
    "distribute": distribute_command,
    "sweep": sweep_command,
    "run": run_command,
    "run-multi": run_multi_command,
    "rebalance": rebalance_command,
    "status": status_command,
    "reset": reset_command,
    "nonce": nonce_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp-swarm",
        description="Hub-and-satellite bridge / swap / LP automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default="./lp_swarm.yaml", help="Path to YAML config")
    parser.add_argument("--dry-run", action="store_true",
                        help="Quote and check balances but never submit transactions")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init", help="Write an encrypted config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing config")

    wallets_parser = subparsers.add_parser("wallets", help="List derived wallets")
    wallets_parser.add_argument("--balances", action="store_true", help="Fetch native balances")

    withdraw_parser = subparsers.add_parser("withdraw", help="Withdraw from the exchange to the hub")
    withdraw_parser.add_argument("--amount", type=float, required=True, help="Amount in withdraw_token units")
    withdraw_parser.add_argument("--wait", action="store_true", help="Wait until the hub is funded")
    withdraw_parser.add_argument("--wait-min", type=float, help="Hub balance (ETH) that counts as funded")

    distribute_parser = subparsers.add_parser("distribute", help="Fund satellites from the hub")
    distribute_parser.add_argument("--top-up", action="store_true",
                                   help="Only top satellites below min_native_balance_wei up to gas_top_up_target_wei")

    for name, help_text in (("sweep", "Send satellite balances back to the hub"),
                            ("run", "Run the workflow for one satellite"),
                            ("run-multi", "Run the workflow for every satellite"),
                            ("rebalance", "Check LP positions and rebalance if needed")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--fail-on-error", action="store_true", help="Exit 1 if any wallet fails")
        if name in ("run", "rebalance"):
            sub.add_argument("--wallet", type=int, required=(name == "run"), help="Satellite derivation index")
        if name in ("run", "run-multi"):
            group = sub.add_mutually_exclusive_group()
            group.add_argument("--resume", action="store_true", default=True,
                               help="Skip steps already recorded (default)")
            group.add_argument("--fresh", action="store_true", help="Discard saved state and start over")
        if name == "run-multi":
            sub.add_argument("--concurrency", type=int, help="Maximum wallets in flight")
            sub.add_argument("--sequential", action="store_true", help="One wallet at a time")

    subparsers.add_parser("status", help="Show saved wallet states")

    reset_parser = subparsers.add_parser("reset", help="Delete saved state")
    target = reset_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--wallet", type=int, help="Satellite derivation index")
    target.add_argument("--all", action="store_true", help="Every satellite")

    nonce_parser = subparsers.add_parser("nonce", help="Compare local and on-chain nonces")
    nonce_parser.add_argument("--chain", choices=["source", "dest"], default="source")
    nonce_parser.add_argument("--reset", action="store_true", help="Reset local nonces to the pending count")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config() if args.command == "init" else load_config(args)
        setup_logging(config.log_level, config.log_file)
        if args.command not in ("init", "status"):
            print_banner()
        return asyncio.run(COMMANDS[args.command](args, config))
    except BotError as e:
        console.print(f"[red]✗ {e.kind.value}: {e}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
