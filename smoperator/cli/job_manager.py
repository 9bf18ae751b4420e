# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import argparse
import json
import logging
import sys
from typing import Callable, Optional

import yaml
from kombu.exceptions import OperationalError as KombuOperationalError

from smoperator.config import settings
from smoperator.exceptions import ObjectNotFoundError, OperatorError
from smoperator.schema.trainingjob import TrainingJob

# Setup logging
logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _print_job(job: TrainingJob, output: str = "yaml"):
    manifest = job.to_manifest()
    if output == "json":
        print(json.dumps(manifest, indent=2, ensure_ascii=False))
    else:
        print(yaml.safe_dump(manifest, sort_keys=False), end="")


def load_manifest(path: str) -> TrainingJob:
    """Load a TrainingJob manifest from a YAML or JSON file ('-' reads stdin)"""
    if path == "-":
        data = yaml.safe_load(sys.stdin)
    else:
        with open(path) as f:
            data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Manifest {path} does not contain an object")
    return TrainingJob.from_manifest(data)


def apply_job(store, job: TrainingJob, notify: Optional[Callable[[str, str], None]] = None) -> TrainingJob:
    """Create the TrainingJob or update the spec of an existing one"""
    namespace, name = job.metadata.namespace, job.metadata.name
    try:
        existing = store.get(namespace, name)
    except ObjectNotFoundError:
        created = store.create(job)
        print(f"trainingjob {namespace}/{name} created")
        if notify:
            notify(namespace, name)
        return created

    spec = job.spec.model_copy(deep=True)
    if not spec.training_job_name:
        # Keep the name assigned by the operator
        spec.training_job_name = existing.spec.training_job_name
    if spec.model_dump() == existing.spec.model_dump():
        print(f"trainingjob {namespace}/{name} unchanged")
        return existing

    existing.spec = spec
    updated = store.update(existing)
    print(f"trainingjob {namespace}/{name} configured")
    if notify:
        notify(namespace, name)
    return updated


def get_job(store, namespace: str, name: str, output: str = "yaml"):
    job = store.get(namespace, name)
    _print_job(job, output)
    return job


def list_jobs(store):
    keys = store.list_keys()
    if not keys:
        print("No TrainingJobs found")
        return []

    rows = []
    for namespace, name in keys:
        try:
            job = store.get(namespace, name)
        except ObjectNotFoundError:
            continue
        rows.append(
            (
                namespace,
                name,
                job.status.training_job_status or "-",
                job.status.secondary_status or "-",
                job.spec.training_job_name or "-",
            )
        )

    header = ("NAMESPACE", "NAME", "STATUS", "SECONDARY-STATUS", "SAGEMAKER-JOB-NAME")
    widths = [max(len(str(row[i])) for row in rows + [header]) for i in range(len(header))]
    for row in [header] + rows:
        print("  ".join(str(value).ljust(width) for value, width in zip(row, widths)).rstrip())
    return rows


def delete_job(store, namespace: str, name: str, notify: Optional[Callable[[str, str], None]] = None):
    job = store.request_deletion(namespace, name)
    if job is None:
        print(f"trainingjob {namespace}/{name} deleted")
    else:
        print(f"trainingjob {namespace}/{name} marked for deletion, waiting for finalizers {job.metadata.finalizers}")
        if notify:
            notify(namespace, name)
    return job


def queue_reconcile(namespace: str, name: str):
    """Ask the workers for a pass; the periodic resync covers a broker outage"""
    from smoperator.tasks.reconcile_tasks import request_reconcile

    try:
        request_reconcile(namespace, name)
    except KombuOperationalError as e:
        logger.warning(f"Could not queue reconciliation of TrainingJob {namespace}/{name}, leaving it to resync: {e}")


def reconcile_job(store, namespace: str, name: str):
    """Run a single reconciliation pass and print the resulting directive"""
    from smoperator.manager import create_coordinator, create_reconciler
    from smoperator.tasks.dispatcher import ReconcileDispatcher, ReconcileQueue
    from smoperator.tasks.reconcile_tasks import send_reconcile

    dispatcher = ReconcileDispatcher(
        reconciler=create_reconciler(store),
        queue=ReconcileQueue(create_coordinator(), send_reconcile),
        lease_seconds=settings.reconcile_lease_seconds,
    )
    result = dispatcher.run_once(namespace, name)
    if result is None:
        print(f"trainingjob {namespace}/{name}: a reconciliation pass is already running")
        return None
    print(f"trainingjob {namespace}/{name}: {result.describe()}")
    return result


def main(argv=None):
    parser = argparse.ArgumentParser(description="SageMaker TrainingJob Manager CLI")
    parser.add_argument('--datastore', choices=['sql', 'kubernetes'], help='Datastore to use (default: from settings)')
    parser.add_argument(
        '--no-queue', action='store_true', help='Do not queue a reconciliation pass after apply or delete'
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Apply command
    apply_parser = subparsers.add_parser('apply', help='Create or update a TrainingJob from a manifest')
    apply_parser.add_argument('-f', '--filename', required=True, help='YAML or JSON manifest, "-" for stdin')

    # Get command
    get_parser = subparsers.add_parser('get', help='Show a TrainingJob')
    get_parser.add_argument('namespace', help='Namespace')
    get_parser.add_argument('name', help='TrainingJob name')
    get_parser.add_argument('-o', '--output', choices=['yaml', 'json'], default='yaml', help='Output format')

    # List command
    subparsers.add_parser('list', help='List TrainingJobs')

    # Delete command
    delete_parser = subparsers.add_parser('delete', help='Request deletion of a TrainingJob')
    delete_parser.add_argument('namespace', help='Namespace')
    delete_parser.add_argument('name', help='TrainingJob name')

    # Reconcile command
    reconcile_parser = subparsers.add_parser('reconcile', help='Run one reconciliation pass')
    reconcile_parser.add_argument('namespace', help='Namespace')
    reconcile_parser.add_argument('name', help='TrainingJob name')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        from smoperator.manager import create_store

        store = create_store(args.datastore)
        notify = None if args.no_queue else queue_reconcile
        if args.command == 'apply':
            apply_job(store, load_manifest(args.filename), notify)
        elif args.command == 'get':
            get_job(store, args.namespace, args.name, args.output)
        elif args.command == 'list':
            list_jobs(store)
        elif args.command == 'delete':
            delete_job(store, args.namespace, args.name, notify)
        elif args.command == 'reconcile':
            reconcile_job(store, args.namespace, args.name)
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except (OperatorError, OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Command failed: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
