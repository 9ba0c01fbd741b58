"""Main CLI entrypoint for Tagship."""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

import click

from ..config import load_config
from ..errors import TagshipError
from ..events import EventTypes, emit_event, read_events, tail_events
from ..pipeline import release
from ..redact import redact_secrets
from ..rollback import find_release_by_tag, previous_task_definition, rollback_to_revision
from ..state import list_releases, read_history, read_outputs_json, read_release_json, release_exists
from ..status import PipelineStage, StatusDeriver
from ..tags import parse_user_tags
from ..verify import DEFAULT_ATTEMPTS, DEFAULT_INTERVAL, DEFAULT_TIMEOUT, verify_health


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx, output_json, verbose):
    """Tagship - tag-triggered releases for ECS Fargate services."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True
    )


def _json_mode() -> bool:
    return click.get_current_context().find_root().obj.get('json', False)


def _json_output(data: Any) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not _json_mode():
        click.echo(message)


def _fail(message: str, code: int = 1, hint: Optional[str] = None) -> None:
    if _json_mode():
        _json_output({'error': message, 'hint': hint})
    else:
        click.echo(f"❌ {message}", err=True)
        if hint:
            click.echo(f"   Hint: {hint}", err=True)
    sys.exit(code)


def _require_release(release_id: str) -> None:
    try:
        exists = release_exists(release_id)
    except ValueError as e:
        _fail(str(e), code=2)
    if not exists:
        _fail(f"Release {release_id} not found", code=2)


def _print_release_result(result: Dict[str, Any]) -> None:
    if _json_mode():
        _json_output(result)
        return

    click.echo(f"📦 Release: {result['release_id']} ({result['version_tag']})")
    if result['status'] == PipelineStage.SUCCEEDED.value:
        click.echo(f"Status: {click.style('succeeded', fg='green')}")
        click.echo(f"🐳 Image: {result['image_uri']}")
        click.echo(f"🌐 Public URL: {click.style(result['public_url'], fg='blue', underline=True)}")
        return

    click.echo(f"Status: {click.style('failed', fg='red')} ({result['category']})")
    click.echo(f"Reason: {result['error']}")
    if result.get('hint'):
        click.echo(f"Hint: {result['hint']}")
    if result.get('last_lines'):
        click.echo("\n📝 Last log lines:")
        for line in result['last_lines']:
            click.echo(f"  {redact_secrets(line)}")
    click.echo("")
    for line in result.get('rollback_guidance', []):
        click.echo(line)


@main.command('release')
@click.argument('version_tag')
@click.option('--commit', envvar='GITHUB_SHA', help='Commit identifier the tag points at')
@click.option('--skip-build', is_flag=True, help='Re-deploy the image already published under this tag')
@click.option('--region', help='AWS region')
@click.option('--desired-count', type=int, help='Number of task replicas')
@click.option('--cpu', type=int, help='Fargate CPU units')
@click.option('--memory', type=int, help='Task memory (MiB)')
@click.option('--repository-uri', help='ECR repository URI')
@click.option('--terraform-dir', help='Terraform bundle directory')
@click.option('--tag', 'tags', multiple=True, help="Resource tags in format 'key=value' (repeatable)")
def release_cmd(version_tag, commit, skip_build, region, desired_count, cpu, memory,
                repository_uri, terraform_dir, tags):
    """Build, publish, converge and verify a version tag."""
    try:
        user_tags = parse_user_tags(list(tags)) if tags else None
        config = load_config({
            'region': region,
            'desired_count': desired_count,
            'cpu': cpu,
            'memory': memory,
            'repository_uri': repository_uri,
            'terraform_dir': terraform_dir,
        })
        result = release(version_tag, commit, config=config, skip_build=skip_build, user_tags=user_tags)
    except ValueError as e:
        _fail(str(e))

    _print_release_result(result)
    sys.exit(0 if result['status'] == PipelineStage.SUCCEEDED.value else 1)


@main.command()
@click.argument('url')
@click.option('--attempts', type=int, default=DEFAULT_ATTEMPTS, show_default=True, help='Retry budget')
@click.option('--interval', type=float, default=DEFAULT_INTERVAL, show_default=True, help='Seconds between probes')
@click.option('--timeout', type=float, default=DEFAULT_TIMEOUT, show_default=True, help='Per-request timeout')
def verify(url, attempts, interval, timeout):
    """Poll a deployment's health endpoint."""
    def on_attempt(probe):
        mark = '✅' if probe.ok else '…'
        _human_output(f"{mark} attempt {probe.attempt}: {probe.status or '-'} {probe.error or ''}".rstrip())

    try:
        result = verify_health(url, attempts=attempts, interval=interval, timeout=timeout, on_attempt=on_attempt)
    except ValueError as e:
        _fail(str(e))

    if _json_mode():
        _json_output({
            'success': result.success,
            'url': result.url,
            'attempts_used': result.attempts_used,
            'last_error': result.last_error,
        })
    else:
        color = 'green' if result.success else 'red'
        click.echo(click.style(result.message, fg=color))

    sys.exit(0 if result.success else 1)


@main.command()
@click.argument('release_id')
def status(release_id):
    """Get release status."""
    _require_release(release_id)

    status_info = StatusDeriver().derive_status(read_events(release_id), read_outputs_json(release_id))
    metadata = read_release_json(release_id)

    if _json_mode():
        data = status_info.to_dict()
        data['release_id'] = release_id
        data['version_tag'] = metadata.get('version_tag')
        _json_output(data)
        return

    color = {
        PipelineStage.SUCCEEDED: 'green',
        PipelineStage.FAILED: 'red',
    }.get(status_info.stage, 'yellow')

    click.echo(f"📊 Release: {release_id} ({metadata.get('version_tag')})")
    click.echo(f"Stage: {click.style(status_info.stage.value, fg=color)}")
    click.echo(f"Message: {status_info.message}")
    if status_info.image_uri:
        click.echo(f"🐳 Image: {status_info.image_uri}")
    if status_info.public_url:
        click.echo(f"🌐 Public URL: {click.style(status_info.public_url, fg='blue', underline=True)}")
    if status_info.verify_attempts:
        click.echo(f"Health probes: {status_info.verify_attempts}")
    if status_info.failure_hint:
        click.echo(f"Hint: {status_info.failure_hint}")
    if status_info.rolled_back:
        click.echo("↩️  A manual rollback was issued for this release")


@main.command()
@click.argument('release_id')
@click.option('--follow', is_flag=True, help='Follow logs until the release finishes')
@click.option('--source', type=click.Choice(['tf', 'build', 'verify', 'all']), default='all', help='Event source filter')
def logs(release_id, follow, source):
    """View release events."""
    _require_release(release_id)

    try:
        for event in tail_events(release_id, follow=follow):
            if not _should_show_event(event, source):
                continue
            if _json_mode():
                _json_output(event)
            else:
                _print_event_human(event)
    except KeyboardInterrupt:
        _human_output("\n👋 Stopped following logs")


@main.command()
@click.option('--limit', type=int, default=10, show_default=True, help='Number of entries')
def history(limit):
    """List verified releases and recent release runs."""
    entries = read_history()[-limit:]

    if _json_mode():
        _json_output({'verified': entries, 'releases': list_releases()[:limit]})
        return

    if not entries:
        click.echo("No verified releases recorded")
    else:
        click.echo("✅ Verified releases (newest last):")
        for entry in entries:
            click.echo(f"  {entry['version_tag']:<12} {entry['release_id']}  {entry['image_uri']}")

    releases = list_releases()[:limit]
    if releases:
        click.echo("\n📦 Recent runs:")
        for release_id in releases:
            info = StatusDeriver().derive_status(read_events(release_id))
            click.echo(f"  {release_id}  {info.stage.value}")


@main.command()
@click.option('--revision', help="Task definition ARN, family:revision, or 'previous'")
@click.option('--tag', 'version_tag', help='Previously published version tag to re-deploy')
@click.option('--cluster', help='ECS cluster name (for --revision)')
@click.option('--service', help='ECS service name (for --revision)')
@click.option('--release-id', help='Release whose log should record the rollback')
@click.option('--no-wait', is_flag=True, help="Don't wait for the service to stabilise")
def rollback(revision, version_tag, cluster, service, release_id, no_wait):
    """Manually roll back to a previous release."""
    if bool(revision) == bool(version_tag):
        _fail("Specify exactly one of --revision or --tag")

    if release_id:
        _require_release(release_id)
        emit_event(release_id, EventTypes.ROLLBACK_START, {'revision': revision, 'version_tag': version_tag})

    config = load_config()

    if version_tag:
        known = find_release_by_tag(version_tag)
        if known is None:
            _human_output(f"⚠️  {version_tag} has no verified release on record, re-deploying anyway")
        try:
            result = release(version_tag, config=config, skip_build=True)
        except ValueError as e:
            _fail(str(e))
        if release_id:
            emit_event(release_id, EventTypes.ROLLBACK_DONE, {'release_id': result['release_id'], 'status': result['status']})
        _print_release_result(result)
        sys.exit(0 if result['status'] == PipelineStage.SUCCEEDED.value else 1)

    outputs = (read_outputs_json(release_id) if release_id else None) or {}
    cluster = cluster or outputs.get('cluster_name')
    service = service or outputs.get('service_name')
    if not cluster or not service:
        _fail("Cluster and service are required", hint="Pass --cluster/--service or --release-id")

    try:
        if revision == 'previous':
            revision = previous_task_definition(cluster, service, config.app_name, config.region)
            if revision is None:
                _fail("No earlier task definition revision is active")
        result = rollback_to_revision(cluster, service, revision, config.region, wait=not no_wait)
    except TagshipError as e:
        _fail(e.reason, hint=e.hint)

    if release_id:
        emit_event(release_id, EventTypes.ROLLBACK_DONE, result)

    if _json_mode():
        _json_output(result)
    else:
        click.echo(f"↩️  {cluster}/{service} now uses {revision}")


@main.command()
@click.option('--host', default='0.0.0.0', show_default=True, help='Bind address')
@click.option('--port', type=int, default=lambda: int(os.getenv('PORT', 8080)), help='Bind port (default $PORT or 8080)')
def serve(host, port):
    """Serve the health endpoint."""
    from ..health.app import run
    run(host=host, port=port)


def _should_show_event(event: Dict[str, Any], source: str) -> bool:
    """Check if event should be shown based on source filter."""
    if source == 'all':
        return True

    event_type = event.get('type', '')
    prefixes = {
        'tf': ('TF_',),
        'build': ('BUILD_', 'PUSH_'),
        'verify': ('VERIFY_',),
    }[source]
    return event_type.startswith(prefixes) or event_type in (EventTypes.ERROR, EventTypes.DONE)


def _print_event_human(event: Dict[str, Any]) -> None:
    """Print event in human-readable format."""
    event_type = event.get('type', 'UNKNOWN')
    data = event.get('data') or {}

    try:
        time_str = datetime.fromisoformat(event.get('ts', '')).strftime('%H:%M:%S')
    except ValueError:
        time_str = event.get('ts', '')

    if event_type == EventTypes.TF_APPLY_LINE:
        message = data.get('line', '')
    elif event_type == EventTypes.ERROR:
        message = data.get('reason', '')
    else:
        message = ' '.join(f"{k}={v}" for k, v in data.items())
    message = redact_secrets(message)

    if event_type in (EventTypes.TF_APPLY_DONE, EventTypes.VERIFY_OK, EventTypes.DONE, EventTypes.PUSH_DONE):
        color = 'green'
    elif event_type in (EventTypes.ERROR, EventTypes.VERIFY_FAIL):
        color = 'red'
    elif event_type.startswith('TF_'):
        color = 'blue'
    elif event_type.startswith('VERIFY_'):
        color = 'yellow'
    else:
        color = 'white'

    click.echo(f"[{time_str}] {click.style(event_type, fg=color)}: {message}")


if __name__ == '__main__':
    main()
