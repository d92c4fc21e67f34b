"""Command line interface."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from arazzo_engine.config import ConfigError, EngineConfig
from arazzo_engine.core.version import ARAZZO_ENGINE_VERSION
from arazzo_engine.workflows import (
    DependencyGraph,
    StepResult,
    StepStatus,
    WorkflowError,
    load_document,
    load_inputs,
    run_workflows,
)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
STATUS_COLORS = {
    StepStatus.PASSED: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "yellow",
    StepStatus.ERRORED: "red",
}


@dataclass
class Data:
    config: EngineConfig

    __slots__ = ("config",)


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        if ":" not in value:
            raise click.BadParameter(f"Expected 'Name: Value', got {value!r}", param_hint="--header")
        name, _, content = value.partition(":")
        headers[name.strip()] = content.strip()
    return headers


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config-file",
    "config_file",
    help="The path to `arazzo-engine.toml` file to use for configuration",
    metavar="PATH",
    type=str,
)
@click.option(
    "--log-level",
    type=click.Choice(["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"], case_sensitive=False),
    help="Logging level, overrides the configuration file",
)
@click.version_option(ARAZZO_ENGINE_VERSION, prog_name="arazzo-engine")
@click.pass_context
def main(ctx: click.Context, config_file: str | None, log_level: str | None) -> None:
    """Execute Arazzo workflows against live APIs."""
    try:
        if config_file is not None:
            config = EngineConfig.from_path(config_file)
        else:
            config = EngineConfig.discover()
    except FileNotFoundError:
        click.secho(f"❌  Failed to load configuration file from {config_file}", fg="red", bold=True)
        click.echo("\nThe configuration file does not exist")
        ctx.exit(1)
    except ConfigError as exc:
        click.secho(
            f"❌  Failed to load configuration file{f' from {config_file}' if config_file else ''}",
            fg="red",
            bold=True,
        )
        click.echo(f"\nThe loaded configuration is incorrect\n\n{exc}")
        ctx.exit(1)
    config.update(log_level=log_level)
    logging.basicConfig(
        level=config.log_level_number,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = Data(config=config)


@main.command(name="run")
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.option("--inputs", "-i", "inputs_path", type=click.Path(exists=True, dir_okay=False), help="JSON or YAML inputs file")
@click.option("--workflow", "-w", "workflow_ids", multiple=True, help="Run only these workflows (and their dependencies)")
@click.option("--base-url", "-b", type=str, help="Base URL overriding the servers of the API descriptions")
@click.option("--header", "-H", multiple=True, help="Request header (format: 'Name: Value')")
@click.option("--output", "-o", type=click.Path(), help="Output file for results (JSON)")
@click.option("--verbose", is_flag=True, help="Show every executed step")
@click.pass_obj
def run_command(
    data: Data,
    document: str,
    inputs_path: str | None,
    workflow_ids: tuple[str, ...],
    base_url: str | None,
    header: tuple[str, ...],
    output: str | None,
    verbose: bool,
) -> None:
    """Run the workflows of an Arazzo DOCUMENT in dependency order."""
    config = data.config
    config.http.update(base_url=base_url, headers=_parse_headers(header))

    try:
        arazzo = load_document(document, timeout=config.http.timeout, verify_ssl=config.http.verify_ssl)
        inputs: dict[str, Any] = load_inputs(inputs_path) if inputs_path else {}
    except WorkflowError as exc:
        click.secho(f"❌ Failed to load workflows: {exc}", fg="red")
        raise SystemExit(1)

    def on_step_complete(step_result: StepResult) -> None:
        status_code = f" -> {step_result.status_code}" if step_result.status_code is not None else ""
        click.secho(
            f"  [{step_result.status.value.upper()}] {step_result.step_id}{status_code}",
            fg=STATUS_COLORS.get(step_result.status, "white"),
        )

    try:
        results = run_workflows(
            arazzo,
            inputs,
            workflow_ids=list(workflow_ids) or None,
            config=config,
            on_step_complete=on_step_complete if verbose else None,
        )
    except WorkflowError as exc:
        click.secho(f"❌ {exc}", fg="red")
        raise SystemExit(1)

    total_failed = 0
    for result in results:
        if result.status == StepStatus.PASSED:
            click.secho(f"✅ {result.workflow_id} PASSED", fg="green")
            for name, value in result.outputs.items():
                click.echo(f"   {name} = {value}")
        elif result.status == StepStatus.SKIPPED:
            click.secho(f"⏭️  {result.workflow_id} SKIPPED", fg="yellow")
        else:
            total_failed += 1
            click.secho(f"❌ {result.workflow_id} FAILED", fg="red")
            if result.error_message:
                click.echo(f"   {result.error_message}")
        click.echo(f"   Steps: {result.passed_steps} passed, {result.failed_steps} failed")

    if output:
        output_data = {
            "total_workflows": len(results),
            "passed": sum(1 for r in results if r.status == StepStatus.PASSED),
            "failed": total_failed,
            "results": [r.to_dict() for r in results],
        }
        Path(output).write_text(json.dumps(output_data, indent=2, default=str), encoding="utf-8")
        click.echo(f"\nResults saved to: {output}")

    if total_failed > 0:
        raise SystemExit(1)


@main.command(name="order")
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def order_command(data: Data, document: str) -> None:
    """Print the execution order of the workflows of an Arazzo DOCUMENT."""
    try:
        arazzo = load_document(document, timeout=data.config.http.timeout, verify_ssl=data.config.http.verify_ssl)
        graph = DependencyGraph()
        graph.add_workflows(arazzo.workflows)
        order = graph.get_execution_order()
    except WorkflowError as exc:
        click.secho(f"❌ {exc}", fg="red")
        raise SystemExit(1)

    for index, workflow_id in enumerate(order, 1):
        dependencies = graph.get_dependencies(workflow_id)
        suffix = f" (after {', '.join(dependencies)})" if dependencies else ""
        click.echo(f"{index}. {workflow_id}{suffix}")
