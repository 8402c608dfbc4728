"""
Command Line Interface for FreeForge
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .core.config import Config
from .core.health import HealthTracker
from .core.models import GenerationOptions, GenerationRequest, ProjectArtifact
from .generation.events import ChunkEvent, ErrorEvent, PhaseEvent, ResultEvent, StreamEvent
from .generation.service import GenerationService
from .generation.supervisor import RetrySupervisor
from .utils.log_setup import setup_logging

console = Console()


def load_config(config_path) -> Config:
    config = Config.from_yaml(config_path)
    setup_logging(config.logging.level, config.logging.log_file)
    return config


def report_config_errors(errors: List[str]):
    console.print("❌ Configuration errors found:", style="bold red")
    for error in errors:
        console.print(f"  • {error}", style="red")
    if any("API key" in error for error in errors):
        console.print("\n💡 Set one or more OpenRouter keys:", style="yellow")
        console.print("  export OPENROUTER_API_KEY='your-key-here'")
        console.print("  export OPENROUTER_API_KEY_2='another-key'  # optional, up to _10")


def write_artifact(artifact: ProjectArtifact, output_dir: Path) -> List[Path]:
    """Write every file of the artifact below output_dir; paths escaping it are skipped"""
    root = output_dir.resolve()
    root.mkdir(parents=True, exist_ok=True)
    written = []
    for path, generated in artifact.files.items():
        target = (root / path.lstrip('/')).resolve()
        if root != target and root not in target.parents:
            console.print(f"⚠️ Skipping {path}: outside the output directory", style="yellow")
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(generated.code, encoding='utf-8')
        written.append(target)

    manifest = {
        'projectTitle': artifact.project_title,
        'explanation': artifact.explanation,
        'files': sorted(artifact.files),
        'placeholders': artifact.placeholder_paths,
    }
    with open(root / 'freeforge.json', 'w') as f:
        json.dump(manifest, f, indent=2)
    return written


def print_event(event: StreamEvent):
    if isinstance(event, PhaseEvent):
        progress = f" [{event.progress}/{event.total}]" if event.progress and event.total else ""
        console.print(f"  ▸ {event.phase.value}{progress}: {event.status}", style="cyan")
    elif isinstance(event, ErrorEvent):
        console.print(f"  ✗ {event.message}", style="red")


def print_artifact(artifact: ProjectArtifact, output_dir: Path, written: List[Path]):
    table = Table(title=artifact.project_title, style="cyan")
    table.add_column("File", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Size", justify="right")
    for path, generated in artifact.files.items():
        table.add_row(path, "🚧" if generated.placeholder else "✅", f"{len(generated.code):,} chars")
    console.print(table)
    if artifact.explanation:
        console.print(Panel(artifact.explanation, title="Explanation", style="dim"))
    console.print(f"💾 Wrote {len(written)} file(s) to: {output_dir}", style="green")
    if artifact.placeholder_paths:
        console.print(f"⚠️ {len(artifact.placeholder_paths)} file(s) could not be generated and hold placeholders",
                      style="yellow")


def build_request(prompt: str, existing: tuple, supabase: bool, vercel: bool) -> GenerationRequest:
    return GenerationRequest.create(
        transcript=[{'role': 'user', 'content': prompt}],
        existing_file_paths=existing,
        options=GenerationOptions(include_supabase=supabase, deploy_to_vercel=vercel),
    )


@click.group()
@click.version_option(version=__version__, prog_name="FreeForge")
@click.pass_context
def main(ctx):
    """FreeForge: Resilient multi-file project generation over free-tier LLM endpoints"""
    ctx.ensure_object(dict)


@main.command()
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--save-config', '-s', type=click.Path(), help='Save configuration to file')
def setup(config_path, save_config):
    """Validate the FreeForge configuration"""
    console.print(Panel.fit("🚀 FreeForge Setup", style="bold blue"))
    try:
        config = load_config(config_path)
        errors = config.validate()
        if errors:
            report_config_errors(errors)
            sys.exit(1)

        console.print("✅ Configuration validated successfully!", style="bold green")
        console.print(config.summary())

        if save_config:
            config.save_to_file(save_config)
            console.print(f"💾 Configuration saved to: {save_config} (API keys omitted)", style="green")
    except FileNotFoundError as e:
        console.print(f"❌ Setup failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
def status(config_path):
    """Show current FreeForge configuration and credential health"""
    try:
        config = load_config(config_path)

        table = Table(title="FreeForge Status", style="cyan")
        table.add_column("Component", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Details")

        keys = len(config.api.api_keys)
        table.add_row("API Keys", "✅" if keys else "❌", f"{keys} key(s) loaded")
        table.add_row("Endpoint", "🔗", config.api.base_url)
        table.add_row("Fast Models", "⚡", ', '.join(config.api.fast_models) or "none")
        table.add_row("Code Models", "🧠", ', '.join(config.api.code_models) or "none")
        table.add_row("Key Health", "🔒",
                      f"exhausted after {config.health.exhaust_threshold} failures, "
                      f"{config.health.credential_cooldown:.0f}s cooldown")
        table.add_row("Timeouts", "⏱️",
                      f"stream {config.transport.stream_timeout:.0f}s / first byte "
                      f"{config.transport.first_chunk_timeout:.0f}s / request {config.transport.request_timeout:.0f}s")
        table.add_row("Server", "🌐", f"{config.server.host}:{config.server.port}")

        health = HealthTracker.from_config(config)
        usable = len(health.usable_credentials())
        table.add_row("Usable Keys", "✅" if usable else "❌", f"{usable}/{keys} in this process")

        console.print(table)

        errors = config.validate()
        if errors:
            console.print("\n⚠️  Configuration Issues:", style="yellow")
            for error in errors:
                console.print(f"  • {error}", style="yellow")
        else:
            console.print("\n✅ All systems ready!", style="bold green")

    except Exception as e:
        console.print(f"❌ Status check failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
@click.argument('prompt')
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--output-dir', '-o', type=click.Path(), default='generated', show_default=True,
              help='Directory the generated files are written to')
@click.option('--existing', '-e', multiple=True, help='Path of a file that already exists (can specify multiple)')
@click.option('--supabase', is_flag=True, help='Include a Supabase client module')
@click.option('--vercel', is_flag=True, help='Include Vercel hosting configuration')
@click.option('--print-json', is_flag=True, help='Print the project artifact as JSON instead of a table')
def generate(prompt, config_path, output_dir, existing, supabase, vercel, print_json):
    """Generate a project in-process from PROMPT"""
    console.print(Panel.fit("🏗️  FreeForge Generation", style="bold green"))
    try:
        config = load_config(config_path)
        errors = config.validate()
        if errors:
            report_config_errors(errors)
            sys.exit(1)

        request = build_request(prompt, existing, supabase, vercel)

        async def run() -> ProjectArtifact:
            service = GenerationService.from_config(config)
            try:
                return await service.generate(request, on_event=print_event)
            finally:
                await service.aclose()

        artifact = asyncio.run(run())
        output_path = Path(output_dir)
        written = write_artifact(artifact, output_path)
        if print_json:
            click.echo(json.dumps(artifact.to_dict(), indent=2))
        else:
            print_artifact(artifact, output_path, written)

    except Exception as e:
        console.print(f"❌ Generation failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
@click.argument('prompt')
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--endpoint', help='Generation endpoint (defaults to client.endpoint)')
@click.option('--output-dir', '-o', type=click.Path(), default='generated', show_default=True,
              help='Directory the generated files are written to')
@click.option('--existing', '-e', multiple=True, help='Path of a file that already exists (can specify multiple)')
@click.option('--supabase', is_flag=True, help='Include a Supabase client module')
@click.option('--vercel', is_flag=True, help='Include Vercel hosting configuration')
def request(prompt, config_path, endpoint, output_dir, existing, supabase, vercel):
    """Generate a project from PROMPT through a running FreeForge server, retrying as needed"""
    console.print(Panel.fit("📡 FreeForge Request", style="bold green"))
    try:
        config = load_config(config_path)
        supervisor = RetrySupervisor.from_config(config, endpoint=endpoint)
        console.print(f"🔗 Endpoint: {supervisor.endpoint}")

        artifact = asyncio.run(supervisor.generate(build_request(prompt, existing, supabase, vercel),
                                                   on_event=print_event))
        output_path = Path(output_dir)
        print_artifact(artifact, output_path, write_artifact(artifact, output_path))
        console.print(f"🔁 Attempts used: {supervisor.attempts}")

    except Exception as e:
        console.print(f"❌ Request failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--host', help='Interface to bind (defaults to server.host)')
@click.option('--port', '-p', type=int, help='Port to listen on (defaults to server.port)')
def serve(config_path, host, port):
    """Run the FreeForge HTTP server"""
    from .server import run_server

    config = load_config(config_path)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    errors = config.validate()
    if errors:
        report_config_errors(errors)
        sys.exit(1)

    console.print(Panel.fit(f"🌐 FreeForge serving on http://{config.server.host}:{config.server.port}",
                            style="bold blue"))
    run_server(config)


@main.command()
@click.argument('message')
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
def chat(message, config_path):
    """Stream a short acknowledgement of MESSAGE"""
    try:
        config = load_config(config_path)

        async def run() -> bool:
            service = GenerationService.from_config(config)
            try:
                async with service.chat_stream([{'role': 'user', 'content': message}]) as stream:
                    async for event in stream:
                        if isinstance(event, ChunkEvent):
                            console.print(event.text, end="")
                        elif isinstance(event, ResultEvent):
                            console.print()
                            return True
                        elif isinstance(event, ErrorEvent):
                            console.print(f"\n❌ {event.message}", style="bold red")
                            return False
                return False
            finally:
                await service.aclose()

        if not asyncio.run(run()):
            sys.exit(1)

    except Exception as e:
        console.print(f"❌ Chat failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
@click.argument('prompt')
@click.option('--config-path', '-c', type=click.Path(), help='Path to configuration file')
def enhance(prompt, config_path):
    """Expand PROMPT into a detailed product description"""
    try:
        config = load_config(config_path)

        async def run() -> str:
            service = GenerationService.from_config(config)
            try:
                return await service.enhance_prompt(prompt)
            finally:
                await service.aclose()

        console.print(Panel(asyncio.run(run()), title="✨ Enhanced Prompt", style="green"))

    except Exception as e:
        console.print(f"❌ Enhancement failed: {e}", style="bold red")
        sys.exit(1)


@main.command()
def version():
    """Show the FreeForge version"""
    console.print(f"FreeForge {__version__}")


if __name__ == '__main__':
    main()
