"""
Decision Workflow CLI
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
import yaml

from .config import configure_logging, load_settings
from .core.engine import TriggerRequest, WorkflowEngine
from .core.parser import WorkflowParser
from .core.validator import DslValidator
from .exceptions import WorkflowEngineError
from .integrations.agent import MockAgentInvoker
from .integrations.approval import InMemoryApprovalGateway
from .integrations.connectors import DataConnector, HttpDataConnector, InMemoryDataConnector
from .integrations.references import ReferenceRegistry
from .telemetry.consistency import ConsistencyValidator
from .telemetry.events import ExecutionEventRecorder


def _load_references(catalog: Optional[str]) -> ReferenceRegistry:
    return ReferenceRegistry.from_file(catalog) if catalog else ReferenceRegistry()


def _parse_params(pairs: Tuple[str, ...], params_file: Optional[str]) -> Dict[str, Any]:
    """合并参数文件与 key=value 参数（值按 YAML 标量解析）"""
    params: Dict[str, Any] = {}
    if params_file:
        loaded = yaml.safe_load(Path(params_file).read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise click.BadParameter("params file must contain a mapping", param_hint="--params-file")
        params.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--param")
        params[key.strip()] = yaml.safe_load(value)
    return params


def _echo_json(data: Any):
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to DECISION_WORKFLOW_LOG_LEVEL)')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='.env file to load')
@click.pass_context
def cli(ctx, log_level, env_file):
    """Decision Workflow CLI"""
    settings = load_settings(env_file)
    configure_logging(log_level or settings.log_level)
    ctx.obj = {"settings": settings}


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--catalog', type=click.Path(exists=True, dir_okay=False), help='Reference catalog (YAML)')
def validate(workflow_file, catalog):
    """Validate a workflow DSL file"""
    try:
        dsl = WorkflowParser().parse_file(Path(workflow_file))
    except WorkflowEngineError as e:
        click.echo(f"Parse error: {e}", err=True)
        sys.exit(2)

    result = DslValidator().validate(dsl)
    for issue in result.issues:
        location = issue.node_id or issue.edge_id or "-"
        click.echo(f"[{issue.severity.value}] {issue.code} {location}: {issue.message}")

    ok = result.is_valid
    if ok:
        click.echo(f"Layers: {' -> '.join(','.join(layer) for layer in result.graph.layers)}")
    if catalog:
        report = ConsistencyValidator(_load_references(catalog)).validate_dsl(dsl)
        for issue in report.issues:
            click.echo(f"[ERROR] REFERENCE {issue.node_id or '-'}: {issue.message}")
        click.echo(f"Checked {report.checked} reference(s)")
        ok = ok and report.ok

    click.echo("Valid" if ok else "Invalid")
    sys.exit(0 if ok else 1)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--catalog', type=click.Path(exists=True, dir_okay=False), help='Reference catalog (YAML)')
@click.option('--param', 'param_pairs', multiple=True, help='Trigger parameter as key=value')
@click.option('--params-file', type=click.Path(exists=True, dir_okay=False), help='Trigger parameters (YAML)')
@click.option('--idempotency-key', default=None, help='Idempotency key for the run')
@click.option('--approve/--reject', default=True, help='Automatic decision for approval gates')
@click.option('--timeout', default=300.0, show_default=True, help='Seconds to wait for completion')
@click.option('--events', is_flag=True, help='Print the execution event stream')
@click.pass_context
def run(ctx, workflow_file, catalog, param_pairs, params_file, idempotency_key, approve, timeout, events):
    """Run a workflow file once with mock agents"""
    settings = ctx.obj["settings"]
    params = _parse_params(param_pairs, params_file)

    async def _run() -> int:
        references = _load_references(catalog)
        endpoints = references.connector_endpoints()
        connector: DataConnector = HttpDataConnector(endpoints) if endpoints else InMemoryDataConnector()
        engine = WorkflowEngine(
            settings=settings,
            references=references,
            agent_invoker=MockAgentInvoker(),
            connector=connector,
            approval_gateway=InMemoryApprovalGateway(auto_decision=approve),
        )
        recorder = ExecutionEventRecorder()
        await recorder.attach(engine.event_bus)

        try:
            definition = await engine.create_definition(Path(workflow_file).stem)
            version = await engine.save_draft(definition.id, Path(workflow_file))
            await engine.publish(version.id)
            execution = await engine.run(
                TriggerRequest(definition.id, params=params, idempotency_key=idempotency_key),
                timeout=timeout
            )
        finally:
            await engine.shutdown()
            if isinstance(connector, HttpDataConnector):
                await connector.close()

        if events:
            for event in recorder.events:
                click.echo(f"{event.timestamp.isoformat()} {event.event_type.value} {event.node_id or ''}")
        _echo_json({
            **execution.to_status_dict(),
            "outputs": execution.outputs,
        })
        return 0 if execution.status.value == "SUCCESS" else 1

    try:
        exit_code = asyncio.run(_run())
    except WorkflowEngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    sys.exit(exit_code)


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.pass_context
def serve(ctx, host, port):
    """Start the API server"""
    import uvicorn
    from .api.app import create_app

    settings = ctx.obj["settings"]
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_level=settings.log_level.lower())


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
