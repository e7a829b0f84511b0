"""Command-line driver for the dalton chat core."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import yaml
from rich.console import Console
from rich.table import Table

from dalton import __version__
from dalton.config import DaltonConfig, load_config
from dalton.llm.errors import ClassifiedError
from dalton.llm.orchestrator import get_orchestrator
from dalton.types import AssembledResponse, ChatOptions

console = Console()
err_console = Console(stderr=True)


def _load(ctx: click.Context) -> DaltonConfig:
    config_path = ctx.obj.get("config_path")
    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except (ValueError, yaml.YAMLError) as e:
        # malformed YAML or rejected by the pydantic models
        err_console.print(f"[red]Invalid config: {e}[/red]")
        sys.exit(1)
    if config_file:
        err_console.print(f"[dim]Config: {config_file}[/dim]")
    return config


def _print_tool_calls(response: AssembledResponse) -> None:
    table = Table(title="Tool calls", show_lines=False, border_style="dim")
    table.add_column("#", style="bold", width=3)
    table.add_column("ID")
    table.add_column("Function", style="cyan")
    table.add_column("Arguments", max_width=60)
    for i, call in enumerate(response.tool_calls):
        table.add_row(str(i), call.id, call.function_name, call.arguments)
    console.print(table)


async def _ask(
    config: DaltonConfig,
    provider: str,
    messages: list[dict],
    options: ChatOptions,
) -> AssembledResponse:
    async with get_orchestrator(provider, config) as orchestrator:
        return await orchestrator.send_chat(messages, options)


@click.group()
@click.version_option(__version__, prog_name="dalton")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to dalton.yaml (auto-detected from CWD or ~/.dalton/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """dalton - streaming chat across LLM providers."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.argument("prompt")
@click.option("--provider", "-p", default=None, help="Provider name (default from config)")
@click.option("--model", "-m", default=None, help="Model name (default from config)")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--timeout", "-t", "timeout_ms", type=int, default=None,
              help="End-to-end timeout in milliseconds")
@click.pass_context
def ask(ctx: click.Context, prompt: str, provider: str | None, model: str | None,
        system_prompt: str | None, timeout_ms: int | None):
    """Send PROMPT and stream the reply."""
    config = _load(ctx)
    provider = provider or config.default_provider
    model = model or config.default_model

    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    def on_content(text: str) -> None:
        console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    options = ChatOptions(model=model, timeout_ms=timeout_ms, on_content=on_content)
    try:
        response = asyncio.run(_ask(config, provider, messages, options))
    except ClassifiedError as e:
        console.print()
        err_console.print(f"[red]Error ({e.category.value}): {e}[/red]")
        sys.exit(1)

    if response.content:
        console.print()
    if response.has_tool_calls:
        _print_tool_calls(response)
    usage = response.metadata.get("usage")
    if usage:
        err_console.print(f"[dim]usage: {usage}[/dim]")


@main.command()
@click.pass_context
def providers(ctx: click.Context):
    """List configured providers."""
    config = _load(ctx)
    if not config.providers:
        console.print("[dim]No providers configured.[/dim]")
        return

    table = Table(title="Providers", show_lines=False, border_style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Base URL")
    table.add_column("Enabled", width=8)
    for name, spec in config.providers.items():
        marker = " *" if name == config.default_provider else ""
        table.add_row(
            name + marker,
            spec.type or name,
            spec.base_url or "[dim]default[/dim]",
            "[green]yes[/green]" if spec.enabled else "[dim]no[/dim]",
        )
    console.print(table)


if __name__ == "__main__":
    main()
