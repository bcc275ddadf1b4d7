#!/usr/bin/env python3
"""
Program Control CLI - Command Line Interface for the Program Engine.

Provides commands for defining programs and stages, running processes
through them, viewing audit trails, and administering the engine.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..exceptions import EngineError
from ..models import UserRecord
from ..runtime import ProgramEngine

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

OPERATOR_ID = "cli-operator"


class ProgramController:
    """Main controller for Program Engine operations."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize the program controller."""
        self.config_path = Path(config_path) if config_path else None

        # Load configuration
        self.config = self._load_config()

        self.engine = ProgramEngine(self.config)
        self.operator = self._ensure_operator()

        console.print(f"[green]Program Engine initialized (notifier={self.config['notifier']})[/green]")

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config = {
            "state_file": "program_state.json",
            "audit_dir": "audit",
            "notifier": "log",
            "automation_mode": "inline",
        }

        if self.config_path and self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    file_config = json.load(f)
                    config.update(file_config)
                console.print(f"[blue]Loaded configuration from {self.config_path}[/blue]")
            except (OSError, json.JSONDecodeError) as e:
                console.print(f"[red]Error loading config: {e}[/red]")

        return config

    def _ensure_operator(self) -> UserRecord:
        """The CLI acts as an administrator account kept in the store."""
        operator = self.engine.state_manager.get_user(OPERATOR_ID)
        if operator is None:
            operator = self.engine.register_user(
                "CLI Operator", "operator@localhost.local", system_role="admin", user_id=OPERATOR_ID
            )
        return operator

    def resolve_user(self, user_ref: str) -> Optional[UserRecord]:
        """Look a user up by id or email."""
        return (self.engine.state_manager.get_user(user_ref)
                or self.engine.state_manager.get_user_by_email(user_ref))


def _print_error(e: EngineError):
    console.print(f"[red]{e.message}[/red]")
    for error in getattr(e, "errors", None) or []:
        if error != e.message:
            console.print(f"  - {error}")


@click.group()
@click.option('--config', '-c', help='Path to configuration file')
@click.pass_context
def cli(ctx, config):
    """Program Engine Control CLI - HR Program and Process Workflows"""
    ctx.ensure_object(dict)
    ctx.obj['controller'] = ProgramController(config)


@cli.command()
@click.option('--type', 'program_type', help='Filter by program type')
@click.pass_context
def list_programs(ctx, program_type):
    """List programs."""
    controller = ctx.obj['controller']

    programs = controller.engine.programs.list_programs(program_type)
    if not programs:
        console.print("[yellow]No programs found[/yellow]")
        return

    table = Table(title=f"Programs ({len(programs)})")
    table.add_column("ID", style="cyan")
    table.add_column("Slug", style="green")
    table.add_column("Name", style="blue")
    table.add_column("Type", style="yellow")
    table.add_column("Stages", style="magenta")
    table.add_column("Active", style="red")

    for program in programs:
        table.add_row(
            program.id,
            program.slug,
            program.name,
            program.type,
            str(len(program.stage_ids)),
            "✓" if program.is_active else ""
        )

    console.print(table)


@cli.command()
@click.argument('name')
@click.argument('slug')
@click.option('--type', 'program_type', help='Program type (default: generic)')
@click.option('--start-date', type=click.DateTime(), required=True, help='Start date (YYYY-MM-DD)')
@click.option('--end-date', type=click.DateTime(), help='End date (YYYY-MM-DD)')
@click.pass_context
def create_program(ctx, name, slug, program_type, start_date, end_date):
    """Create an inactive program."""
    controller = ctx.obj['controller']

    try:
        program = controller.engine.programs.create_program(
            controller.operator, name, slug, start_date,
            program_type=program_type, end_date=end_date,
        )
        console.print(f"[green]✓ Created program {program.slug} ({program.id})[/green]")
    except EngineError as e:
        _print_error(e)


@cli.command()
@click.argument('program_id')
@click.pass_context
def activate_program(ctx, program_id):
    """Activate a program, deactivating every other one."""
    controller = ctx.obj['controller']

    try:
        program = controller.engine.programs.activate_program(controller.operator, program_id)
        console.print(f"[green]✓ {program.slug} is now the active program[/green]")
    except EngineError as e:
        _print_error(e)


@cli.command()
@click.argument('program_id')
@click.option('--name', help='Stage name (defaults to the template name)')
@click.option('--type', 'stage_type', help='Stage type (default: form)')
@click.option('--template', 'template_id', help='Create the stage from a template')
@click.option('--config-file', type=click.Path(exists=True), help='JSON file with the stage config')
@click.pass_context
def add_stage(ctx, program_id, name, stage_type, template_id, config_file):
    """Append a stage to a program."""
    controller = ctx.obj['controller']

    config = None
    if config_file:
        with open(config_file, 'r') as f:
            config = json.load(f)

    try:
        stage = controller.engine.programs.add_stage_to_program(
            controller.operator, program_id, name=name, stage_type=stage_type,
            template_id=template_id, config=config,
        )
        console.print(f"[green]✓ Added stage '{stage.name}' ({stage.id})[/green]")
    except EngineError as e:
        _print_error(e)


@cli.command()
@click.argument('program_id')
@click.pass_context
def show_program(ctx, program_id):
    """Show a program and its stages."""
    controller = ctx.obj['controller']

    try:
        program = controller.engine.programs.get_program(program_id)
        stages = controller.engine.programs.get_program_stages(program_id)
    except EngineError as e:
        _print_error(e)
        return

    status = "[green]active[/green]" if program.is_active else "[yellow]inactive[/yellow]"
    console.print(Panel.fit(f"[bold blue]{program.name}[/bold blue]\n{program.slug} ({program.type}) {status}"))
    console.print(f"Start: {program.start_date.strftime('%Y-%m-%d')}")
    if program.end_date:
        console.print(f"End: {program.end_date.strftime('%Y-%m-%d')}")
    console.print(f"Automations: {len(program.automations)}")

    table = Table(title="Stages")
    table.add_column("#", style="cyan")
    table.add_column("ID", style="green")
    table.add_column("Name", style="blue")
    table.add_column("Type", style="yellow")
    table.add_column("Fields", style="magenta")

    for index, stage in enumerate(stages, 1):
        table.add_row(str(index), stage.id, stage.name, stage.type, str(len(stage.form_config)))

    console.print(table)


@cli.command()
@click.argument('name')
@click.argument('email')
@click.option('--role', default='guest', help='System role slug')
@click.pass_context
def register_user(ctx, name, email, role):
    """Register a user record."""
    controller = ctx.obj['controller']

    if controller.engine.state_manager.get_user_by_email(email):
        console.print(f"[red]A user with email {email} already exists[/red]")
        return

    user = controller.engine.register_user(name, email, system_role=role)
    console.print(f"[green]✓ Registered {user.name} as {user.system_role} ({user.id})[/green]")


@cli.command()
@click.argument('program_id')
@click.argument('user')
@click.option('--type', 'process_type', required=True, help='Process type')
@click.pass_context
def start_process(ctx, program_id, user, process_type):
    """Start a process for USER (id or email) in a program."""
    controller = ctx.obj['controller']

    target = controller.resolve_user(user)
    if not target:
        console.print(f"[red]User {user} not found[/red]")
        return

    try:
        process = controller.engine.processes.create_process(
            controller.operator, program_id, process_type, target_user_id=target.id
        )
        console.print(f"[green]✓ Started process {process.id} at stage {process.current_stage_id}[/green]")
    except EngineError as e:
        _print_error(e)


@cli.command()
@click.argument('process_id')
@click.argument('data_file', type=click.Path(exists=True))
@click.option('--stage', 'stage_id', help='Stage id (defaults to the current stage)')
@click.pass_context
def submit(ctx, process_id, data_file, stage_id):
    """Submit DATA_FILE (JSON) for a process's current stage."""
    controller = ctx.obj['controller']

    with open(data_file, 'r') as f:
        data = json.load(f)

    try:
        process = controller.engine.processes.get_process(controller.operator, process_id)
        process = controller.engine.processes.submit_stage(
            controller.operator, process_id, stage_id or process.current_stage_id, data
        )
    except EngineError as e:
        _print_error(e)
        return

    if process.status == "completed":
        console.print(f"[green]✓ Process {process.id} completed[/green]")
    else:
        console.print(f"[green]✓ Process {process.id} advanced to {process.current_stage_id}[/green]")


@cli.command()
@click.option('--program', 'program_id', help='Filter by program')
@click.option('--type', 'process_type', help='Filter by process type')
@click.option('--status', help='Filter by status')
@click.option('--limit', default=50, help='Maximum number of processes to show')
@click.pass_context
def list_processes(ctx, program_id, process_type, status, limit):
    """List processes."""
    controller = ctx.obj['controller']

    processes = controller.engine.processes.list_processes(
        controller.operator, process_type=process_type, program_id=program_id, status=status
    )[:limit]

    if not processes:
        console.print("[yellow]No processes found[/yellow]")
        return

    table = Table(title=f"Processes ({len(processes)})")
    table.add_column("ID", style="cyan")
    table.add_column("User", style="green")
    table.add_column("Type", style="yellow")
    table.add_column("Status", style="magenta")
    table.add_column("Current Stage", style="blue")
    table.add_column("Updated", style="red")

    for process in processes:
        table.add_row(
            process.id,
            process.user_id,
            process.type,
            process.status,
            process.current_stage_id,
            process.updated_at.strftime("%Y-%m-%d %H:%M:%S")
        )

    console.print(table)


@cli.command()
@click.argument('process_id')
@click.pass_context
def show_process(ctx, process_id):
    """Show a process and the data submitted so far."""
    controller = ctx.obj['controller']

    try:
        process = controller.engine.processes.get_process(controller.operator, process_id)
    except EngineError as e:
        _print_error(e)
        return

    user = controller.engine.state_manager.get_user(process.user_id)
    owner = f"{user.name} <{user.email}>" if user else process.user_id
    console.print(Panel.fit(f"[bold blue]{process.type}[/bold blue] process\n{owner}"))
    console.print(f"Status: {process.status}")
    console.print(f"Current stage: {process.current_stage_id}")
    console.print(f"Created: {process.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    console.print(f"Updated: {process.updated_at.strftime('%Y-%m-%d %H:%M:%S')}")

    if process.data:
        table = Table(title="Submitted Data")
        table.add_column("Stage", style="cyan")
        table.add_column("Field", style="green")
        table.add_column("Value", style="yellow")

        for stage_id, fields in process.data.items():
            for field, value in fields.items():
                table.add_row(stage_id, field, json.dumps(value, default=str))

        console.print(table)
    else:
        console.print("[yellow]No data submitted yet[/yellow]")


@cli.command()
@click.option('--entity', 'entity_id', help='Filter by entity ID')
@click.option('--user', 'user_id', help='Filter by acting user')
@click.option('--action', help='Filter by action')
@click.option('--limit', default=50, help='Maximum number of records to show')
@click.pass_context
def audit_trail(ctx, entity_id, user_id, action, limit):
    """Show audit records, most recent first."""
    controller = ctx.obj['controller']

    records = controller.engine.audit_logger.get_events(
        user_id=user_id, entity_id=entity_id, action=action, limit=limit
    )

    if not records:
        console.print("[yellow]No audit records found[/yellow]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Action", style="green")
    table.add_column("Entity", style="yellow")
    table.add_column("Entity ID", style="blue")
    table.add_column("User", style="magenta")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.action,
            record.entity_type,
            record.entity_id,
            record.user_id or "system"
        )

    console.print(table)


@cli.command()
@click.pass_context
def list_roles(ctx):
    """List configured roles."""
    controller = ctx.obj['controller']

    table = Table(title="Roles")
    table.add_column("Slug", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Process Types", style="yellow")
    table.add_column("Capabilities", style="magenta")

    for role in controller.engine.role_store.list_roles():
        table.add_row(
            role.slug,
            role.name,
            ", ".join(role.allowed_process_types),
            ", ".join(role.permissions)
        )

    console.print(table)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show system statistics."""
    controller = ctx.obj['controller']

    stats = controller.engine.get_stats()
    documents = stats["documents"]

    console.print("[bold blue]Document Statistics[/bold blue]")
    for name in ("programs", "stages", "templates", "processes", "blocks", "users"):
        console.print(f"{name.title()}: {documents.get(name, 0)}")

    if documents["processes_by_status"]:
        console.print("\nProcesses by Status:")
        for status, count in documents["processes_by_status"].items():
            console.print(f"  {status}: {count}")

    automations = stats["automations"]
    console.print("\n[bold blue]Automation Statistics[/bold blue]")
    console.print(f"Completed: {automations['completed']}")
    console.print(f"Pending: {automations['pending']}")
    console.print(f"Dead letters: {automations['dead_letters']}")


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
@click.pass_context
def serve(ctx, port, host):
    """Start the Program Engine API server."""
    from ..api.server import start_server

    console.print(f"[green]Starting Program Engine API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def main():
    """Console script entrypoint."""
    cli(obj={})


if __name__ == "__main__":
    main()
