#!/usr/bin/env python3
"""
DockObserver
Watches the containers running on a Docker host, matches them with the
compose stacks that declare them and reports which images have a newer
build in their registry. It never pulls, restarts or edits anything.
"""

import os
import sys
import json
import time
import argparse
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional, Iterable

from observer_core.logging_utils import setup_logging
from observer_core.compose_utils import find_compose_files, load_compose_services
from observer_core.image_utils import format_digest_short, registry_url
from observer_core.inventory_utils import build_inventory, carry_forward
from observer_core.models import ComposeService, InventoryRecord, InventoryState, ObserverConfig
from observer_core.registry_utils import RegistryResolver
from observer_core.scheduler_utils import (
    build_policy,
    check_record_update,
    merge_updates,
    pick_next_records,
    record_image_ref,
)
from observer_core.state_utils import StateStore, state_to_dict
from observer_core import config_utils as cu
from observer_core import docker_utils as du
from observer_core import metrics_utils as mu
from observer_core import notify_utils as nu

# Load environment variables from .env file (quietly, no prints)
from dotenv import load_dotenv

ENV_FILE = '/etc/dockobserver/.env'
if os.path.exists(ENV_FILE):
    load_dotenv(ENV_FILE)


class DockObserver:
    """Inventory and update-detection engine.

    Every public operation returns the full persisted record list afterwards.
    Writes to the state are serialized; registry checks run outside the
    write lock and are merged into whatever state is current when they finish.
    """

    def __init__(self, config_file: str = None):
        if config_file is None:
            config_file = os.getenv('CONFIG_FILE', '/etc/dockobserver/dockobserver_config.json')
        self.config_file = config_file
        self.logger = setup_logging()
        self.load_config()
        self.init_metrics()
        self.init_components()
        self.store.load()

    def load_config(self):
        """Load configuration from JSON file."""
        if not os.path.exists(self.config_file):
            self.config_file = cu.create_default_config(self.config_file, self.logger)
        try:
            self.config = cu.load_config(self.config_file, self.logger)
        except Exception as e:
            self.logger.error(f"Invalid configuration file: {e}")
            sys.exit(1)

    def init_metrics(self):
        m = mu.init_metrics(self.logger)
        self.metrics_enabled = m['enabled']
        self.counter_refreshes = m['refreshes']
        self.counter_checks = m['checks']
        self.counter_check_failures = m['check_failures']
        self.gauge_updates_available = m['updates_available']
        self.counter_state_restored = m['state_restored']

    def init_components(self, session=None):
        config: ObserverConfig = self.config
        self.docker_client = None
        self.store = StateStore(
            config.state_file,
            self.logger,
            state_backup_dir=config.state_backup_dir,
            state_backup_count=config.state_backups,
            counter_state_restored=self.counter_state_restored,
        )
        self.resolver = RegistryResolver(
            self.logger,
            registries=config.registries,
            timeout=config.request_timeout,
            rate_limit_cooldown_sec=config.rate_limit_cooldown_sec,
            session=session,
        )
        self.policy = build_policy(config.check_policy, config.max_workers, config.max_per_host)
        self.cancel_event = threading.Event()
        self._running = False
        self._write_lock = threading.Lock()

    def get_docker_client(self):
        if self.docker_client is None:
            self.docker_client = du.create_docker_client(self.config.docker_socket)
            self.logger.info("Docker client initialized successfully")
        return self.docker_client

    def records(self) -> List[InventoryRecord]:
        return self.store.get().records

    def collect_compose_services(self) -> List[ComposeService]:
        files = find_compose_files(self.config.compose_mounts, self.logger, self.config.scan_depth)
        services: List[ComposeService] = []
        for compose_file in files:
            services.extend(load_compose_services(compose_file, self.logger))
        self.logger.debug(f"Found {len(services)} compose services in {len(files)} files")
        return services

    def rebuild_inventory(self) -> List[InventoryRecord]:
        """Rebuild all records from the runtime and the compose manifests.

        A runtime query failure raises and leaves the stored state untouched.
        """
        docker_client = self.get_docker_client()
        with ThreadPoolExecutor(max_workers=2) as pool:
            snapshot_future = pool.submit(du.load_docker_snapshot, docker_client, self.logger)
            compose_future = pool.submit(self.collect_compose_services)
            snapshot = snapshot_future.result()
            services = compose_future.result()

        now = datetime.now(timezone.utc)
        inventory = build_inventory(snapshot, services, now)
        with self._write_lock:
            previous = self.store.get()
            records = carry_forward(inventory, previous.records)
            self.store.save(InventoryState(records=records, last_refresh=now))

        if self.counter_refreshes is not None:
            self.counter_refreshes.inc()
        self._set_update_gauge(records)
        self.logger.info(
            f"Inventory refreshed: {len(records)} records "
            f"({sum(1 for r in records if r.source == 'compose')} from compose)"
        )
        return self.records()

    def _check(self, record: InventoryRecord) -> InventoryRecord:
        updated = check_record_update(record, self.resolver)
        if self.counter_checks is not None:
            self.counter_checks.inc()
        if updated.update_available is None and self.counter_check_failures is not None:
            self.counter_check_failures.inc()
        self.logger.debug(f"Checked {updated.display_name}:{updated.tag or 'latest'}: {updated.update_message}")
        return updated

    def _run_checks(self, targets: List[InventoryRecord]) -> List[InventoryRecord]:
        if not targets:
            return self.records()
        if not self._running:
            # A one-off operation starts fresh after an earlier stop()
            self.cancel_event.clear()
        self.logger.info(f"Checking {len(targets)} images for updates ({self.policy.name})")
        updates = self.policy.run(targets, self._check, self.cancel_event)

        with self._write_lock:
            state = self.store.get()
            current = {r.id: r for r in state.records}
            # A slower concurrent check must not overwrite a newer result
            fresh = [
                u for u in updates
                if u.id in current and (
                    current[u.id].last_update_check is None
                    or u.last_update_check >= current[u.id].last_update_check
                )
            ]
            state.records = merge_updates(state.records, fresh)
            self.store.save(state)

        for update in fresh:
            old = current[update.id]
            if update.update_available and not old.update_available:
                self.logger.info(f"Update available for {update.display_name}:{update.tag or 'latest'}")
                nu.notify_update_available(update, self.logger)
        self._set_update_gauge(state.records)
        return self.records()

    def _set_update_gauge(self, records: Iterable[InventoryRecord]):
        if self.gauge_updates_available is not None:
            self.gauge_updates_available.set(sum(1 for r in records if r.update_available))

    def check_batch(self, limit: Optional[int] = None) -> List[InventoryRecord]:
        """Check the least recently checked records."""
        if limit is None:
            limit = self.config.update_batch_size
        return self._run_checks(pick_next_records(self.records(), limit))

    def check_by_ids(self, ids: Iterable[str]) -> List[InventoryRecord]:
        wanted = set(ids)
        return self._run_checks([r for r in self.records() if r.id in wanted])

    def check_by_stack(self, stack: str) -> List[InventoryRecord]:
        return self._run_checks([r for r in self.records() if r.stack == stack])

    def stop(self):
        """Stop the batch in progress after its current record.

        Inside ``run`` this also ends the loop for good; one-off checks
        started afterwards run normally.
        """
        self.cancel_event.set()

    def run(self):
        """Main loop: periodic inventory refresh and periodic batch checks."""
        self.logger.info("DockObserver starting...")
        refresh_every = self.config.local_refresh_hours * 3600
        check_every = self.config.update_interval_minutes * 60
        next_refresh = time.monotonic()
        next_check = time.monotonic() + check_every
        self.logger.info(
            f"Refresh every {self.config.local_refresh_hours}h, "
            f"check {self.config.update_batch_size} images every {self.config.update_interval_minutes}m"
        )
        self._running = True
        try:
            while not self.cancel_event.is_set():
                now = time.monotonic()
                if now >= next_refresh:
                    try:
                        self.rebuild_inventory()
                    except Exception as e:
                        self.logger.error(f"Inventory refresh failed: {e}")
                    next_refresh = now + refresh_every
                if now >= next_check:
                    try:
                        self.check_batch()
                    except Exception as e:
                        self.logger.error(f"Update check failed: {e}")
                    next_check = now + check_every
                self.cancel_event.wait(max(1.0, min(next_refresh, next_check) - time.monotonic()))
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal. Shutting down...")
        finally:
            self._running = False


def format_record(record: InventoryRecord) -> str:
    if record.update_available is True:
        update = 'UPDATE'
    elif record.update_available is False:
        update = 'ok'
    else:
        update = '?'
    where = f"{record.stack}/{record.service}" if record.source == 'compose' else '(socket)'
    image = f"{record.display_name}:{record.tag or 'latest'}"
    return (
        f"{update:6} {record.status:8} {where:30} {image:50} "
        f"{format_digest_short(record.digest):13} {record.update_message or ''}  "
        f"{registry_url(record_image_ref(record))}"
    )


def print_records(records: List[InventoryRecord], as_json: bool = False):
    if as_json:
        print(json.dumps(state_to_dict(InventoryState(records=records))['records'], indent=2))
        return
    for record in records:
        print(format_record(record))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DockObserver')
    parser.add_argument('--config', dest='config', help='Path to dockobserver_config.json')
    sub = parser.add_subparsers(dest='command')
    sub.add_parser('refresh', help='Rebuild the inventory from Docker and compose files')
    check = sub.add_parser('check', help='Check images for registry updates')
    check.add_argument('--limit', type=int, help='Number of least recently checked images to check')
    check.add_argument('--id', dest='ids', action='append', help='Check the record with this id (repeatable)')
    check.add_argument('--stack', help='Check every record of a compose stack')
    show = sub.add_parser('list', help='Print the stored inventory')
    show.add_argument('--json', action='store_true', help='Print records as JSON')
    sub.add_parser('run', help='Refresh and check periodically')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    observer = DockObserver(config_file=args.config)
    command = args.command or 'run'

    try:
        if command == 'refresh':
            print_records(observer.rebuild_inventory())
        elif command == 'check':
            if args.ids:
                records = observer.check_by_ids(args.ids)
            elif args.stack:
                records = observer.check_by_stack(args.stack)
            else:
                records = observer.check_batch(args.limit)
            print_records(records)
        elif command == 'list':
            print_records(observer.records(), as_json=args.json)
        else:
            observer.run()
    except RuntimeError as e:
        observer.logger.error(f"{command} failed: {e}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
