"""
Command-line driver for Extension Attribute Sync.

Runs the two workflows:

* sync: read computer objects from Active Directory and preview or apply
  their extension attributes on the matching Entra ID devices
* set: write one extension attribute on chosen Active Directory objects
"""

import sys
import json
import logging
import argparse
import threading
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional

from extattr_sync.config import load_config, configured_containers, ConfigurationError
from extattr_sync.differ import parse_slot_selection
from extattr_sync.engine import SyncEngine, SyncError, summarize_results
from extattr_sync.graph_client import GraphSession, RemoteDirectoryClient, RemoteSessionError
from extattr_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError, discover_default_containers
from extattr_sync.logging_setup import setup_logging
from extattr_sync.matcher import IdentityMatcher
from extattr_sync.models import SyncResult, SyncStatus
from extattr_sync.notifications import (
    send_failure_notification,
    send_session_failure,
    send_sync_summary,
    send_test_notification
)
from extattr_sync.report import write_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_LDAP_CONNECTION = 3
EXIT_UNEXPECTED = 4
EXIT_REMOTE_SESSION = 5


def apply_local_attributes(client: LDAPClient, targets: Iterable[str],
                           slot_values: Dict[int, Optional[str]]) -> Dict[str, bool]:
    """
    Write extension attributes on a set of local objects.

    Every target is attempted even if earlier ones fail.

    Args:
        client: Connected LDAP client
        targets: Distinguished names of the objects to change
        slot_values: Slot index to value; None or "" clears the slot

    Returns:
        Mapping of target DN to True if every write on it succeeded
    """
    outcomes = {}
    for target in targets:
        ok = True
        for slot, value in sorted(slot_values.items()):
            if not client.write_attribute(target, slot, value):
                ok = False
        outcomes[target] = ok
    return outcomes


class SyncRunner:
    """
    Wires configuration, logging, both directory sessions and the sync engine
    together for one run.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.ldap_client = None
        self.remote_session = None
        self.remote_client = None
        self.results: List[SyncResult] = []

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is None:
            self.config = load_config(self.config_path)

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _connect_ldap(self):
        """Establish LDAP connection."""
        error_config = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(self.config['ldap'])
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _acquire_remote_session(self, proxy_url: Optional[str] = None):
        """Acquire the Graph session once for the whole run."""
        graph_config = dict(self.config['graph'])
        if proxy_url:
            graph_config['proxy_url'] = proxy_url

        self.remote_session = GraphSession(graph_config).acquire()
        self.remote_client = RemoteDirectoryClient(self.remote_session, self.config.get('error_handling', {}))

    def _resolve_containers(self, containers: Optional[List[str]]) -> List[str]:
        if containers:
            return containers

        containers = configured_containers(self.config)
        if containers:
            return containers

        domain_root = self.ldap_client.get_domain_root()
        containers = discover_default_containers(domain_root)
        logger.info(f"No containers configured, using discovered defaults: {containers}")
        return containers

    def run_sync(self, containers: Optional[List[str]] = None, recursive: Optional[bool] = None,
                 slots: Optional[List[int]] = None, preview: Optional[bool] = None,
                 max_workers: Optional[int] = None, report_path: Optional[str] = None,
                 proxy_url: Optional[str] = None, cancel_event: Optional[threading.Event] = None) -> int:
        """
        Run the sync workflow. Arguments left as None fall back to the sync
        section of the configuration.

        Returns:
            Exit code
        """
        start_time = datetime.now()
        try:
            self._load_configuration()
            self._setup_logging()

            sync_config = self.config['sync']
            recursive = sync_config['recursive'] if recursive is None else recursive
            slots = sync_config['slots'] if slots is None else slots
            preview = sync_config['preview'] if preview is None else preview
            max_workers = max_workers or sync_config['max_workers']
            report_path = report_path or sync_config.get('report_path')

            logger.info(f"Starting extension attribute sync ({'preview' if preview else 'apply'}), "
                        f"slots={slots}")

            self._connect_ldap()
            self._acquire_remote_session(proxy_url)

            containers = self._resolve_containers(containers)
            if not containers:
                raise ConfigurationError("No containers configured and none could be discovered")

            objects = []
            enumeration_failures = 0
            unreadable_objects = 0
            for enumeration in self.ldap_client.enumerate_containers(containers, recursive):
                if enumeration.ok:
                    objects.extend(enumeration.objects)
                    unreadable_objects += len(enumeration.skipped)
                    for skipped in enumeration.skipped:
                        logger.error(f"Unreadable object in {enumeration.container}: {skipped}")
                else:
                    enumeration_failures += 1
                    logger.error(f"Skipping container {enumeration.container}: {enumeration.error}")

            if self.remote_session.expired:
                raise RemoteSessionError("Microsoft Graph token expired before the batch started")

            engine = SyncEngine(IdentityMatcher(self.remote_client), self.remote_client, max_workers)
            self.results = engine.sync_batch(objects, slots, preview, cancel_event)

            summary = summarize_results(self.results)
            runtime_seconds = (datetime.now() - start_time).total_seconds()
            self._log_summary(summary, enumeration_failures, unreadable_objects, runtime_seconds)

            if report_path:
                write_report(self.results, report_path, sync_config.get('report_delimiter', ','))

            self._notify(send_sync_summary, summary, self.results, runtime_seconds, preview)

            if summary[SyncStatus.ERROR.value] or enumeration_failures or unreadable_objects:
                return EXIT_PARTIAL_FAILURE
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._notify(send_session_failure, 'LDAP', str(e),
                         retry_count=self.config.get('error_handling', {}).get('max_retries', 0))
            return EXIT_LDAP_CONNECTION
        except RemoteSessionError as e:
            logger.error(f"Microsoft Graph session error: {e}")
            self._notify(send_session_failure, 'Microsoft Graph', str(e))
            return EXIT_REMOTE_SESSION
        except (LDAPQueryError, SyncError) as e:
            logger.error(f"Sync aborted: {e}")
            return EXIT_UNEXPECTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, 'Unexpected Error', str(e))
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def run_set(self, targets: List[str], slot: int, value: Optional[str]) -> int:
        """
        Run the set-attributes workflow on the given targets.

        Returns:
            Exit code; EXIT_PARTIAL_FAILURE if any write failed
        """
        try:
            self._load_configuration()
            self._setup_logging()
            self._connect_ldap()

            outcomes = apply_local_attributes(self.ldap_client, targets, {slot: value})
            failed = [target for target, ok in outcomes.items() if not ok]

            logger.info(f"Set extensionAttribute{slot} on {len(outcomes) - len(failed)} of "
                        f"{len(outcomes)} objects")
            for target in failed:
                logger.error(f"Failed to update {target}")

            return EXIT_PARTIAL_FAILURE if failed else EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_LDAP_CONNECTION
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _notify(self, sender, *args, **kwargs):
        """Send a notification; failures are logged and never abort the run."""
        if not self.config:
            return
        try:
            sender(*args, config=self.config.get('notifications', {}), **kwargs)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _log_summary(self, summary: Dict[str, int], enumeration_failures: int, unreadable_objects: int,
                     runtime_seconds: float):
        """Log final synchronization statistics."""
        runtime_str = f"{runtime_seconds:.2f} seconds"
        if runtime_seconds > 60:
            runtime_str = f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Containers failed: {enumeration_failures}")
        logger.info(f"Unreadable objects: {unreadable_objects}")
        for status, count in summary.items():
            logger.info(f"{status}: {count}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, the LDAP bind and the Graph token.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            with LDAPClient(self.config['ldap']) as test_client:
                test_client.connect(max_retries=1, retry_wait=1)
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except Exception as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            GraphSession(self.config['graph']).acquire()
            health_status['checks']['graph'] = {
                'status': 'pass',
                'message': 'Microsoft Graph token acquired'
            }
        except Exception as e:
            health_status['checks']['graph'] = {
                'status': 'fail',
                'message': f'Microsoft Graph authentication failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.remote_client:
            self.remote_client.close()
            self.remote_client = None
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None


def _slot_selection(text: str) -> List[int]:
    try:
        return parse_slot_selection(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='extattr-sync',
        description='Sync Active Directory computer extension attributes to Entra ID devices'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    sync_parser = subparsers.add_parser('sync', help='Preview or apply extension attributes on cloud devices')
    sync_parser.add_argument('--container', action='append', dest='containers',
                             help='Container DN to read (repeatable); defaults to sync.containers')
    sync_parser.add_argument('--one-level', action='store_true',
                             help='Read only the immediate children of each container')
    sync_parser.add_argument('--slots', type=_slot_selection,
                             help='Slots to sync, e.g. "3", "1,3,5-7" or "all"')
    mode_group = sync_parser.add_mutually_exclusive_group()
    mode_group.add_argument('--preview', action='store_true', dest='preview', default=None,
                            help='Report what would change without writing')
    mode_group.add_argument('--apply', action='store_false', dest='preview', default=None,
                            help='Write changes even if sync.preview is set in the configuration')
    sync_parser.add_argument('--workers', type=int, help='Objects processed concurrently')
    sync_parser.add_argument('--report', help='Write a delimited report of the results to this path')
    sync_parser.add_argument('--proxy', help='HTTP proxy URL for Microsoft Graph')

    set_parser = subparsers.add_parser('set', help='Write one extension attribute on Active Directory objects')
    set_parser.add_argument('--target', action='append', dest='targets', required=True,
                            help='Distinguished name of an object to change (repeatable)')
    set_parser.add_argument('--slot', type=int, required=True, choices=range(1, 16), metavar='1-15',
                            help='Extension attribute slot')
    value_group = set_parser.add_mutually_exclusive_group(required=True)
    value_group.add_argument('--value', help='Value to set')
    value_group.add_argument('--clear', action='store_true', help='Clear the attribute')

    subparsers.add_parser('health-check', help='Check configuration and connectivity')
    subparsers.add_parser('test-email', help='Send a test notification email')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    runner = SyncRunner(config_path=args.config)

    if args.command == 'health-check':
        health_status = runner.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.command == 'test-email':
        try:
            runner._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION)
        if send_test_notification(runner.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    if args.command == 'set':
        value = None if args.clear else args.value
        sys.exit(runner.run_set(args.targets, args.slot, value))

    sys.exit(runner.run_sync(
        containers=args.containers,
        recursive=False if args.one_level else None,
        slots=args.slots,
        preview=args.preview,
        max_workers=args.workers,
        report_path=args.report,
        proxy_url=args.proxy
    ))


if __name__ == "__main__":
    main()
