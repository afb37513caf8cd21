#!/usr/bin/env python3
"""
Spreadsheet Transformation CLI - Dual Mode

Commands that touch jobs can operate in two modes:
1. Direct mode (default): Uses the database and queue directly via services
2. API mode: Makes HTTP requests to the FastAPI backend

Usage:
    # Run rules against a local file, no database or queue needed
    python scripts/mutate_cli.py transform --file report.xlsx --rules rules.json --output out.csv

    # Queue a job (direct mode, or API mode with --api-url)
    python scripts/mutate_cli.py enqueue --file report.xlsx --org org_1 --configuration-id <id> [--wait]

    # Inspect and operate
    python scripts/mutate_cli.py job-status --job-id <id>
    python scripts/mutate_cli.py dlq-reprocess [--delivery-id <id> | --all]
    python scripts/mutate_cli.py queue-stats
"""

import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import json
import time
import logging
from typing import Any, Dict, Optional

import click
from dotenv import load_dotenv
import requests

from services.errors import MutateError
from services.rule_engine import RuleEngine

# Load environment variables
load_dotenv()

# Configure logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE', 'cli.log')

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler(sys.stderr)
    ]
)

logger = logging.getLogger('mutate_cli')

TERMINAL = ('completed', 'failed')


def load_rules_file(path: str) -> Dict[str, Any]:
    """
    Read a rules file.

    Accepts either a bare rule list or an object with `rules` and an
    optional `output_format`.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, list):
        return {'rules': data, 'output_format': None}
    return {'rules': data.get('rules', []), 'output_format': data.get('output_format')}


def _container():
    from tasks.celery_app import get_container
    return get_container()


def _print_job(job: Dict[str, Any], show_log: bool = True):
    click.echo(f"Job ID: {job.get('job_id') or job.get('id')}")
    click.echo(f"Status: {str(job.get('status', 'unknown')).upper()}")
    click.echo(f"File: {job.get('original_file_name')}")
    click.echo(f"Attempts: {job.get('attempts', 0)}")
    if job.get('output_file_url'):
        click.echo(f"Output: {job['output_file_url']}")
    if job.get('error_message'):
        click.echo(f"Error: {job['error_message']}")
    click.echo(f"Webhook delivered: {job.get('webhook_delivered', False)} "
               f"({job.get('webhook_attempts', 0)} attempts)")
    if show_log and job.get('execution_log'):
        click.echo("\nExecution log:")
        for line in job['execution_log']:
            click.echo(f"  {line}")


@click.group()
def cli():
    """Spreadsheet transformation pipeline tools."""


@cli.command('transform')
@click.option('--file', '-f', 'file_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Spreadsheet to transform (.xlsx, .xlsm, .csv, .tsv)')
@click.option('--rules', '-r', 'rules_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='JSON file with a rule list or {"rules": [...], "output_format": {...}}')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write CSV here (default: stdout)')
@click.option('--quiet', '-q', is_flag=True, help='Do not print the execution log')
def transform_cmd(file_path: str, rules_path: str, output: Optional[str], quiet: bool):
    """Apply rules to a local file without the database or queue."""
    config = load_rules_file(rules_path)
    buffer = Path(file_path).read_bytes()

    result = RuleEngine().transform(buffer, Path(file_path).name, config['rules'], config['output_format'])

    if not quiet:
        for line in result.log:
            click.echo(line, err=True)

    if not result.success:
        click.echo(f"\n✗ Transformation failed: {result.error}", err=True)
        sys.exit(1)

    if output:
        Path(output).write_bytes(result.output.data)
        click.echo(f"\n✓ Wrote {result.output.row_count} rows x {result.output.column_count} columns to {output}",
                   err=True)
    else:
        click.echo(result.output.text)


@cli.command('enqueue')
@click.option('--file', '-f', 'file_path', required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--org', 'organization_id', required=True, help='Organization id')
@click.option('--configuration-id', '-c', required=True, help='Configuration id')
@click.option('--callback-url', help='Webhook URL overriding configured targets')
@click.option('--uid', help='Correlation id echoed in the webhook payload')
@click.option('--wait', is_flag=True, help='Poll until the job finishes')
@click.option('--api-url', envvar='API_URL', help='FastAPI backend URL (enables API mode)')
def enqueue_cmd(file_path: str, organization_id: str, configuration_id: str, callback_url: Optional[str],
                uid: Optional[str], wait: bool, api_url: Optional[str]):
    """Create a transformation job and put it on the queue."""
    if api_url:
        click.echo(f"🌐 API Mode: Using backend at {api_url}")
        job_id = enqueue_via_api(api_url, file_path, organization_id, configuration_id, callback_url, uid)
    else:
        click.echo("💾 Direct Mode: Using local database")
        job_id = enqueue_direct(file_path, organization_id, configuration_id, callback_url, uid)

    click.echo(f"✓ Job queued. Job ID: {job_id}")
    if wait:
        track_job(job_id, api_url)


def enqueue_direct(file_path: str, organization_id: str, configuration_id: str,
                   callback_url: Optional[str], uid: Optional[str]) -> str:
    from services.transformation_service import encode_file_payload
    from tasks.queue import PROCESS_TRANSFORMATION_TASK

    services = _container()
    buffer = Path(file_path).read_bytes()
    try:
        configuration = services.job_store.get_configuration(configuration_id)
        if configuration.organization_id != organization_id:
            raise click.ClickException(f"Configuration {configuration_id} does not belong to {organization_id}")

        max_attempts = services.settings.max_attempts_for(len(buffer))
        job = services.job_store.create_job(
            organization_id=organization_id,
            configuration_id=configuration_id,
            original_file_name=Path(file_path).name,
            file_size=len(buffer),
            callback_url=callback_url,
            uid=uid,
            max_attempts=max_attempts,
        )
        services.queue.enqueue(
            PROCESS_TRANSFORMATION_TASK,
            {'job_id': job.id, 'file_data': encode_file_payload(buffer)},
            task_id=job.id,
            attempts=max_attempts,
        )
        return job.id
    except MutateError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def enqueue_via_api(api_url: str, file_path: str, organization_id: str, configuration_id: str,
                    callback_url: Optional[str], uid: Optional[str]) -> str:
    click.echo(f"\n📤 Uploading {file_path} to {api_url}...")
    data = {'organization_id': organization_id, 'configuration_id': configuration_id}
    if callback_url:
        data['callback_url'] = callback_url
    if uid:
        data['uid'] = uid

    try:
        with open(file_path, 'rb') as f:
            response = requests.post(
                f"{api_url}/api/jobs",
                files={'file': (Path(file_path).name, f, 'application/octet-stream')},
                data=data,
                timeout=30
            )
    except requests.exceptions.RequestException as e:
        click.echo(f"❌ Network error: {e}", err=True)
        sys.exit(1)

    if response.status_code != 202:
        click.echo(f"❌ Upload failed ({response.status_code}): {response.text}", err=True)
        sys.exit(1)

    return response.json()['job_id']


def fetch_job(job_id: str, api_url: Optional[str]) -> Dict[str, Any]:
    if api_url:
        response = requests.get(f"{api_url}/api/jobs/{job_id}", timeout=10)
        if response.status_code == 404:
            raise click.ClickException(f"Job {job_id} not found")
        response.raise_for_status()
        return response.json()

    job_store = _container().job_store
    try:
        job = job_store.get_job(job_id).to_dict()
    except MutateError as e:
        raise click.ClickException(str(e))
    latest = job_store.latest_progress(job_id)
    job['progress'] = latest.to_dict() if latest else None
    return job


def track_job(job_id: str, api_url: Optional[str], interval: float = 2.0, timeout: float = 1800):
    """Poll job status until it reaches a terminal state."""
    click.echo("🔄 Waiting for job to finish...\n")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = fetch_job(job_id, api_url)
        progress = job.get('progress') or {}
        if progress:
            percent = float(progress.get('percent', 0))
            bar_length = 40
            filled = int(bar_length * percent / 100)
            bar = '█' * filled + '░' * (bar_length - filled)
            click.echo(f"\r[{bar}] {percent:.1f}% - {progress.get('stage')}: {progress.get('message')}", nl=False)

        if job.get('status') in TERMINAL:
            click.echo("\n")
            _print_job(job)
            if job['status'] == 'failed':
                sys.exit(1)
            return
        time.sleep(interval)

    click.echo(f"\n⚠️  Job {job_id} still running after {timeout:.0f}s", err=True)
    sys.exit(2)


@cli.command('job-status')
@click.option('--job-id', '-j', required=True, help='Job id')
@click.option('--no-log', is_flag=True, help='Hide the execution log')
@click.option('--api-url', envvar='API_URL', help='FastAPI backend URL (enables API mode)')
def job_status_cmd(job_id: str, no_log: bool, api_url: Optional[str]):
    """Show a job's status, output and execution log."""
    _print_job(fetch_job(job_id, api_url), show_log=not no_log)


@cli.command('dlq-reprocess')
@click.option('--delivery-id', '-d', help='Reprocess a single dead delivery')
@click.option('--all', 'reprocess_all', is_flag=True, help='Reprocess every dead delivery')
@click.option('--limit', default=100, show_default=True, help='Maximum deliveries with --all')
def dlq_reprocess_cmd(delivery_id: Optional[str], reprocess_all: bool, limit: int):
    """Reset dead webhook deliveries and put them back on the queue."""
    services = _container()

    if delivery_id:
        task_id = services.delivery_worker.reprocess(delivery_id)
        if task_id is None:
            click.echo(f"✗ Delivery {delivery_id} is not in the dead-letter queue", err=True)
            sys.exit(1)
        click.echo(f"✓ Delivery {delivery_id} re-enqueued as task {task_id}")
        return

    if reprocess_all:
        requeued = services.delivery_worker.reprocess_all_dead(limit)
        click.echo(f"✓ Re-enqueued {len(requeued)} dead deliveries")
        for requeued_id in requeued:
            click.echo(f"  {requeued_id}")
        return

    dead = services.delivery_store.list_dead(limit)
    click.echo(f"Dead-letter queue: {len(dead)} deliveries (use --delivery-id or --all to reprocess)")
    for delivery in dead:
        click.echo(f"  {delivery.id}  job={delivery.job_id}  attempts={delivery.attempts}  "
                   f"status={delivery.response_status}  {delivery.error}")


@cli.command('queue-stats')
def queue_stats_cmd():
    """Show job, delivery and queue counts."""
    services = _container()

    click.echo("Jobs:")
    for status, count in services.job_store.job_counts().items():
        click.echo(f"  {status:<12} {count}")

    click.echo("\nWebhook deliveries:")
    for status, count in services.delivery_store.delivery_counts().items():
        click.echo(f"  {status:<12} {count}")

    click.echo("\nQueues:")
    try:
        for name, counts in services.queue.get_job_counts().items():
            click.echo(f"  {name:<22} waiting={counts['waiting']} active={counts['active']} "
                       f"scheduled={counts['scheduled']}")
    except Exception as e:
        logger.warning(f"Could not read queue counts: {e}")
        click.echo("  unavailable (broker unreachable)")


if __name__ == '__main__':
    cli()
