"""Command-line interface for the vault agent."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
import typer

from .models.agent import AgentResult, AgentTask, Budget, CurrentNote, EditInstruction, ProgressEvent, SuspendedResult
from .services.capabilities import LocalVaultCapabilities
from .services.config import AppConfig, get_config
from .services.diff import compute_diff, summarize_diff
from .services.edit_interpreter import apply_edit
from .services.tool_registry import get_tool_registry
from .services.vault import VaultService
from .services.vault_agent import VaultAgent, VaultAgentError, build_agent

logger = logging.getLogger(__name__)

APP_HELP = """
vault-agent: let a language model explore and edit a markdown note vault.

The agent works in rounds: it calls tools (search, read, edit, create, ...)
until it calls done() or runs out of rounds. When it needs a decision it asks
a question; answer it at the prompt and the run continues.
"""

app = typer.Typer(name="vault-agent", help=APP_HELP, no_args_is_help=True)
console = Console()

EVENT_STYLES = {
    "iteration": "bold blue",
    "thinking": "dim",
    "tool_call": "cyan",
    "tool_result": "dim",
    "suspended": "yellow",
    "complete": "green",
    "error": "red",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_event(event: ProgressEvent) -> None:
    style = EVENT_STYLES.get(event.type, "")
    message = escape(event.message)
    detail = escape(event.detail or "")
    if event.type == "iteration":
        console.print(f"[{style}]{message}[/{style}] [dim]{detail}[/dim]")
    elif event.type == "tool_call":
        console.print(f"  [{style}]> {message}[/{style}] [dim]{detail}[/dim]")
    elif event.type == "tool_result":
        first_line = (event.full_content or "").split("\n", 1)[0]
        console.print(f"    [{style}]{escape(first_line[:100])}[/{style}]")
    elif event.type == "thinking":
        console.print(f"  [{style}]{escape((event.full_content or '')[:200])}[/{style}]")
    elif event.type == "error":
        console.print(f"[{style}]{message}[/{style}]")


def _ask(result: SuspendedResult) -> str:
    console.print(Panel(result.question, title="The agent asks", border_style="yellow"))
    if result.choices:
        for index, choice in enumerate(result.choices, start=1):
            console.print(f"  {index}. {choice}")
        answer = Prompt.ask("Answer (number or text)")
        if answer.isdigit() and 1 <= int(answer) <= len(result.choices):
            return result.choices[int(answer) - 1]
        return answer
    return Prompt.ask("Answer")


def _print_result(result: AgentResult) -> None:
    style = "green" if result.success else ("yellow" if result.status == "cancelled" else "red")
    console.print(Panel(Markdown(result.summary or "(no summary)"), title=f"Result: {result.status}", border_style=style))

    usage = result.token_usage
    console.print(
        f"[dim]{result.iterations_used} round(s), {usage.total_tokens:,} tokens "
        f"({usage.prompt_tokens:,} prompt / {usage.completion_tokens:,} completion)[/dim]"
    )
    if result.notes_read:
        console.print(f"[dim]Notes read: {', '.join(result.notes_read)}[/dim]")
    if result.notes_created:
        console.print(f"[dim]Notes created: {', '.join(result.notes_created)}[/dim]")
    if result.web_sources_used:
        console.print(f"[dim]Web sources: {', '.join(source.url for source in result.web_sources_used)}[/dim]")


def _print_pending(backend: LocalVaultCapabilities) -> None:
    if not backend.pending_edits:
        return
    table = Table(title="Proposed edits")
    table.add_column("ID", style="cyan")
    table.add_column("Note", style="magenta")
    table.add_column("Position")
    table.add_column("Type")
    table.add_column("Diff", justify="right")
    for edit in backend.pending_edits:
        original = backend.vault.read_raw(edit.path)
        table.add_row(
            edit.id,
            edit.path,
            edit.instruction.position,
            edit.edit_type,
            summarize_diff(compute_diff(original, edit.new_content)),
        )
    console.print(table)


def _apply_pending(vault: VaultService, backend: LocalVaultCapabilities) -> None:
    by_file: dict[str, List[EditInstruction]] = {}
    for edit in backend.pending_edits:
        by_file.setdefault(edit.path, []).append(edit.instruction)
    for path, instructions in by_file.items():
        resolved, errors = vault.apply_edits(path, instructions)
        console.print(f"[green]Applied {len(instructions) - len(errors)} edit(s) to {resolved}[/green]")
        for error in errors:
            console.print(f"[red]Rejected:[/red] {error}")


async def _drive(agent: VaultAgent, task: AgentTask, budget: Budget, interactive: bool):
    result = await agent.run(task, budget)
    while isinstance(result, SuspendedResult):
        if not interactive:
            return result
        answer = await asyncio.to_thread(_ask, result)
        result = await agent.resume(result.resume_token, answer)
    return result


@app.command("run")
def run(
    task: str = typer.Argument(..., help="What the agent should do"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Treat this note as the open note"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-i", min=1, help="Round limit"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", min=1, help="Token limit"),
    apply: bool = typer.Option(False, "--apply", help="Write proposed edits without asking"),
    interactive: bool = typer.Option(True, "--interactive/--no-interactive", help="Answer agent questions at the prompt"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the agent on TASK against the configured vault (VAULT_PATH).

    Edits are proposed first and shown as a table; accept them at the prompt
    or pass --apply.
    """
    load_dotenv()
    _configure_logging(verbose)
    config: AppConfig = get_config()
    vault = VaultService(config)

    current_note = None
    if note:
        try:
            path = vault.require_note(note)
        except (FileNotFoundError, PermissionError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1)
        current_note = CurrentNote(path=path, content=vault.read_raw(path))

    try:
        agent = build_agent(config, vault=vault, progress=None if as_json else _print_event)
    except VaultAgentError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        console.print("Set OPENAI_API_KEY in the environment or a .env file.")
        raise typer.Exit(code=1)

    budget = Budget(
        max_iterations=max_iterations or config.max_iterations,
        max_total_tokens=max_tokens or config.max_total_tokens,
    )
    agent_task = AgentTask(task=task, current_note=current_note, vault_stats=vault.stats())

    try:
        result = asyncio.run(_drive(agent, agent_task, budget, interactive and not as_json))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        raise typer.Exit(code=130)

    backend = agent.executor.capabilities
    if as_json:
        console.print_json(json.dumps(result.model_dump(mode="json")))
        raise typer.Exit(code=0 if result.status in ("completed", "suspended") else 1)

    if isinstance(result, SuspendedResult):
        console.print(Panel(result.question, title="The agent asks", border_style="yellow"))
        console.print(f"Resume token: {result.resume_token}")
        return

    _print_result(result)
    if isinstance(backend, LocalVaultCapabilities) and backend.pending_edits:
        _print_pending(backend)
        if apply or Confirm.ask("Apply these edits?", default=False):
            _apply_pending(vault, backend)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("preview")
def preview(
    file: str = typer.Argument(..., help="Note path or name"),
    position: str = typer.Argument(..., help='Position, e.g. "replace:3-5" or "after:## Tasks"'),
    content: str = typer.Option("", "--content", "-c", help="Content block"),
):
    """Show the diff an edit would produce, without writing it."""
    load_dotenv()
    vault = VaultService(get_config())
    try:
        path = vault.require_note(file)
    except (FileNotFoundError, PermissionError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    document = vault.read_raw(path)
    outcome = apply_edit(document, EditInstruction(file=path, position=position, content=content))
    if not outcome.ok:
        console.print(f"[red]Edit rejected:[/red] {outcome.error}")
        raise typer.Exit(code=1)

    styles = {"added": ("+ ", "green"), "removed": ("- ", "red"), "unchanged": ("  ", "dim")}
    for line in compute_diff(document, outcome.content or ""):
        prefix, style = styles[line.type]
        console.print(Text(prefix + line.content, style=style))


@app.command("tools")
def tools(
    final: bool = typer.Option(False, "--final", help="Show the finalization-only subset"),
):
    """List the tools the agent is offered with the current configuration."""
    load_dotenv()
    config = get_config()
    registry = get_tool_registry()
    table = Table(title="Finalization tools" if final else "Available tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Category", style="magenta")
    for name in registry.available_tools(
        config.capabilities,
        web_enabled=config.web_enabled,
        disabled_tools=config.disabled_tools,
        finalization=final,
    ):
        table.add_row(name.value, registry.category(name).value)
    console.print(table)


if __name__ == "__main__":
    app()
