"""CLI commands using Click framework."""

import click
import json
import logging
from pathlib import Path
from typing import Optional

from safe_migrate.application.dtos.migration_dto import MigrationRequest, PlanActionRequest
from safe_migrate.domain.entities.operation import ExecutionMode, Phase
from safe_migrate.domain.entities.verdict import MigrationReport, VerdictStatus
from safe_migrate.domain.services.verdict_reporter import VerdictReporter
from safe_migrate.infrastructure.di_container import DIContainer
from safe_migrate.infrastructure.parsers.sql_operation_parser import SQLOperationParser
from safe_migrate.infrastructure.repositories.operation_repository import OperationRepository

STATUS_ICONS = {
    VerdictStatus.ALLOWED: "✓",
    VerdictStatus.BLOCKED_WITH_SUGGESTION: "⚠️",
    VerdictStatus.BLOCKED: "✗",
}


def _load_request(path: str, phase: Optional[str], strict: Optional[bool], operator: str) -> MigrationRequest:
    """Build a request from an operations JSON document or a raw .sql script."""
    try:
        return _read_request(path, phase, strict, operator)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{path} is not valid JSON: {e}")
    except KeyError as e:
        raise click.ClickException(f"{path}: backfill result is missing {e}")
    except ValueError as e:
        raise click.ClickException(f"{path}: {e}")


def _read_request(path: str, phase: Optional[str], strict: Optional[bool], operator: str) -> MigrationRequest:
    text = Path(path).read_text()
    repository = OperationRepository()
    phase_hint = Phase(phase) if phase else None

    if path.endswith(".sql"):
        operations = SQLOperationParser().parse(text, phase_hint)
        return MigrationRequest(operations=operations, strict=strict, operator=operator)

    data = json.loads(text)
    operations = repository.parse_operations(data)
    if phase_hint:
        from dataclasses import replace
        operations = [op if op.phase_hint else replace(op, phase_hint=phase_hint) for op in operations]
    if not repository.validate_operations(operations):
        raise click.ClickException("Operation ids must be unique within a batch")
    return MigrationRequest(
        operations=operations,
        backfill_results=repository.parse_backfill_results(data),
        strict=strict,
        operator=operator,
    )


def _render_sql(report: MigrationReport) -> str:
    lines = []
    for bucket in (report.pre_deploy, report.post_deploy):
        lines.append(f"-- {bucket.phase.value}")
        for statement in bucket.statements:
            if statement.description:
                lines.append(f"-- {statement.description}")
            if statement.execution_mode == ExecutionMode.NON_TRANSACTIONAL:
                lines.append("-- run outside a transaction")
            if statement.repeat_until_no_rows:
                lines.append("-- repeat until no rows are affected")
            lines.append(f"{statement.sql};")
        lines.append("")
    return "\n".join(lines)


def _echo_report(report: MigrationReport) -> None:
    click.echo(f"\n📋 Verdicts (rule table {report.rule_table_version}, session {report.session}):", err=True)
    for verdict in report.verdicts:
        icon = STATUS_ICONS[verdict.status]
        click.echo(f"   {icon} {verdict.operation.operation_id}: {verdict.operation.describe()} [{verdict.label.value}]", err=True)
        if verdict.status != VerdictStatus.ALLOWED:
            click.echo(f"      Reason: {verdict.rationale}", err=True)
        if verdict.suggestion:
            click.echo(f"      Suggestion: {verdict.suggestion}", err=True)

    for error in report.errors:
        click.echo(f"   ❌ {error['type']}: {error['message']}", err=True)

    if report.ok:
        click.echo(f"\n💾 Pre-deploy: {len(report.pre_deploy.statements)} statement(s), "
                   f"post-deploy: {len(report.post_deploy.statements)} statement(s)", err=True)


def _finish(report: MigrationReport, output: Optional[str], fmt: str) -> None:
    rendered = _render_sql(report) if fmt == "sql" else json.dumps(report.to_dict(), indent=2)
    if output:
        with open(output, 'w') as f:
            f.write(rendered)
        click.echo(f"\n💾 Report saved to: {output}", err=True)
    else:
        click.echo(rendered)

    if not report.ok:
        raise click.ClickException("Migration batch rejected; nothing may be applied")


@click.group()
@click.version_option(version="1.0.0")
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.option('--rules', '-r', type=click.Path(exists=True), help='Rule table JSON file')
@click.option('--plan-store', '-s', type=click.Path(), help='JSON file holding lifecycle plans')
@click.pass_context
def cli(ctx, verbose, rules, plan_store):
    """Safe Migrate - blue/green-safe PostgreSQL migration planner."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    container = DIContainer()
    container.configure(rules_file=rules, plan_store=plan_store)
    ctx.obj = container


@cli.command()
@click.argument('operations', type=click.Path(exists=True))
@click.option('--phase', type=click.Choice([p.value for p in Phase]), help='Phase hint for unhinted operations')
@click.option('--strict/--no-strict', default=None, help='Treat blocked-with-suggestion as blocked')
@click.pass_obj
def check(container: DIContainer, operations, phase, strict):
    """Classify operations without planning or recording anything."""
    request = _load_request(operations, phase, strict, operator="")
    rules = container.get_rule_table()
    reporter = VerdictReporter(strict=rules.strict if strict is None else strict, rule_table_version=rules.version)
    verdicts = container.get_classifier().classify_all(request.operations)

    click.echo(f"🔍 Checking {len(verdicts)} operation(s) against rule table {rules.version}")
    for verdict in verdicts:
        click.echo(f"   {STATUS_ICONS[verdict.status]} {verdict.operation.operation_id}: "
                   f"{verdict.operation.describe()} -> {verdict.status.value}")
        if verdict.status != VerdictStatus.ALLOWED:
            click.echo(f"      Reason: {verdict.rationale}")
        if verdict.suggestion:
            click.echo(f"      Suggestion: {verdict.suggestion}")

    blocking = [v for v in verdicts if reporter.is_blocking(v)]
    if blocking:
        raise click.ClickException(f"{len(blocking)} operation(s) blocked")
    click.echo("✅ All operations may proceed")


@cli.command()
@click.argument('operations', type=click.Path(exists=True))
@click.option('--phase', type=click.Choice([p.value for p in Phase]), help='Phase hint for unhinted operations')
@click.option('--strict/--no-strict', default=None, help='Treat blocked-with-suggestion as blocked')
@click.option('--operator', default='cli', help='Who is planning this batch')
@click.option('--output', '-o', type=click.Path(), help='Write the report here instead of stdout')
@click.option('--format', 'fmt', type=click.Choice(['json', 'sql']), default='json', help='Report format')
@click.pass_obj
def plan(container: DIContainer, operations, phase, strict, operator, output, fmt):
    """Classify, expand and schedule a migration batch."""
    request = _load_request(operations, phase, strict, operator)
    report = container.get_orchestrator().process(request)
    _echo_report(report)
    _finish(report, output, fmt)


@cli.command()
@click.pass_obj
def plans(container: DIContainer):
    """List recorded lifecycle plans."""
    summaries = container.get_orchestrator().list_plans()
    if not summaries:
        click.echo("No lifecycle plans recorded")
        return
    for summary in summaries:
        flags = []
        if summary["frozen"]:
            flags.append(f"frozen: {summary['frozen_reason']}")
        if summary["superseded_by"]:
            flags.append(f"superseded by {summary['superseded_by']}")
        suffix = f" ({'; '.join(flags)})" if flags else ""
        click.echo(f"   {summary['plan_id']}: {summary['kind']} {summary['table']}.{summary['source_column']} "
                   f"-> {summary['state']}{suffix}")


@cli.command()
@click.argument('plan_id')
@click.option('--connection', '-c', help='Database connection string (defaults to DATABASE_URL)')
@click.option('--query-only', is_flag=True, help='Print the verification query instead of running it')
@click.option('--output', '-o', type=click.Path(), help='Write backfill results JSON here')
@click.pass_obj
def verify(container: DIContainer, plan_id, connection, query_only, output):
    """Measure a rename plan's backfill and emit the result for the next plan run."""
    found = container.get_plan_repository().get_plan(plan_id)
    if found is None:
        raise click.ClickException(f"Lifecycle plan {plan_id} does not exist")
    if found.target_column is None:
        raise click.ClickException(f"Plan {plan_id} has no shadow column to verify")

    query = container.get_backfill_verifier().query_for(found)
    if query_only:
        click.echo(query)
        return

    if connection:
        container.configure(connection_string=connection)
    try:
        snapshot = container.get_verification_probe().measure(query)
    except ValueError as e:
        raise click.ClickException(str(e))

    result = {
        "backfill_results": [{
            "plan_id": plan_id,
            "total_rows": snapshot.total_rows,
            "mismatched_rows": snapshot.mismatched_rows,
            "source_checksum": snapshot.source_checksum,
            "target_checksum": snapshot.target_checksum,
        }]
    }
    rendered = json.dumps(result, indent=2)
    if output:
        with open(output, 'w') as f:
            f.write(rendered)
        click.echo(f"💾 Backfill results saved to: {output}")
    else:
        click.echo(rendered)


@cli.command()
@click.argument('plan_id')
@click.option('--operator', required=True, help='Who is taking responsibility for this action')
@click.option('--reason', required=True, help='Why the plan is being resumed')
@click.option('--format', 'fmt', type=click.Choice(['json', 'sql']), default='sql', help='Report format')
@click.pass_obj
def resume(container: DIContainer, plan_id, operator, reason, fmt):
    """Unfreeze a plan after a failed verification and re-run its backfill."""
    report = container.get_orchestrator().resume(PlanActionRequest(plan_id, operator, reason))
    _echo_report(report)
    _finish(report, None, fmt)


@cli.command()
@click.argument('plan_id')
@click.option('--operator', required=True, help='Who is taking responsibility for this action')
@click.option('--reason', required=True, help='Why the rename is being abandoned')
@click.option('--format', 'fmt', type=click.Choice(['json', 'sql']), default='sql', help='Report format')
@click.pass_obj
def compensate(container: DIContainer, plan_id, operator, reason, fmt):
    """Abandon a rename: stop syncing and drop its shadow column."""
    report = container.get_orchestrator().compensate(PlanActionRequest(plan_id, operator, reason))
    _echo_report(report)
    _finish(report, None, fmt)


@cli.command()
@click.option('--port', '-p', default=8000, help='Port to run API server')
@click.option('--host', '-h', default='0.0.0.0', help='Host to bind')
def serve(port, host):
    """Start the REST API server."""

    click.echo(f"🌐 Starting API server on {host}:{port}")

    from safe_migrate.presentation.api.app import create_app
    import uvicorn

    app = create_app()
    uvicorn.run(app, host=host, port=port)


if __name__ == '__main__':
    cli()
