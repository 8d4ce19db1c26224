"""
Main orchestrator for LDAP Reconcile.

Wires configuration, the directory connection, the record store and the
configured sources together, runs the sync passes of each source and reports
the outcome through logs, notifications and the process exit code.
"""

import argparse
import importlib
import json
import logging
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from ldap_reconcile import __version__
from ldap_reconcile.config import ConfigurationError, load_config
from ldap_reconcile.directory import DirectoryConnectionError, LDAPDirectory
from ldap_reconcile.drift import DriftDetector
from ldap_reconcile.errors import ReconcileError
from ldap_reconcile.logging_setup import setup_logging
from ldap_reconcile.models import SyncResult
from ldap_reconcile.notifications import (send_failure_notification, send_run_summary,
                                          send_sync_failure)
from ldap_reconcile.push import StorePush
from ldap_reconcile.reconciler import Reconciler
from ldap_reconcile.sources.base import SourceAPIBase
from ldap_reconcile.store import create_store

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PASS_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED = 4


class ReconcileOrchestrator:
    """
    Runs reconciliation passes against the configured sources.

    ``start()`` loads the configuration, connects the directory and opens the
    store; the pass methods can then be called in any order. ``run()`` wraps a
    complete invocation and maps failures to exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the orchestrator.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration; skips loading from disk
        """
        self.config_path = config_path
        self.config = config
        self.directory = None
        self.store = None
        self.results: List[SyncResult] = []

    # Setup

    def start(self):
        """Load configuration, configure logging, connect the directory and open the store."""
        if self.config is None:
            self._load_configuration()
        setup_logging(self.config.get('logging', {}))
        self._connect_directory()
        self.store = create_store(self.config.get('database'))

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_directory(self):
        ldap_config = self.config['ldap']
        self.directory = LDAPDirectory(ldap_config)
        try:
            self.directory.connect()
        except DirectoryConnectionError:
            self.directory = None
            raise

    def _require_started(self):
        if self.directory is None or self.store is None:
            raise RuntimeError("Orchestrator not started; call start() first")

    def _source_config(self, source_name: str) -> Dict[str, Any]:
        for source_config in self.config.get('sources', []):
            if source_name in (source_config['name'], source_config.get('flag')):
                return source_config
        raise ConfigurationError(f"Unknown source: {source_name}")

    def _load_source_module(self, source_config: Dict[str, Any]) -> SourceAPIBase:
        """Dynamically load a source module and create its API client."""
        module_name = source_config['module']
        try:
            source_module = importlib.import_module(f"ldap_reconcile.sources.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import source module {module_name}: {e}")

        source_class = None
        for attr_name in dir(source_module):
            attr = getattr(source_module, attr_name)
            if isinstance(attr, type) and issubclass(attr, SourceAPIBase) and attr is not SourceAPIBase:
                source_class = attr
                break

        if not source_class:
            raise ConfigurationError(f"No SourceAPIBase subclass found in module {module_name}")
        return source_class(source_config)

    # Passes

    def _run_source_pass(self, source_name: str, operation: str) -> SyncResult:
        self._require_started()
        source_config = self._source_config(source_name)
        source_api = self._load_source_module(source_config)
        try:
            source_api.authenticate()
            reconciler = Reconciler(source_api, self.directory, self.store, source_config, self.config['ldap'])
            if operation == 'departments':
                result = reconciler.sync_departments()
            else:
                result = reconciler.sync_users()
        except ReconcileError as e:
            logger.error(f"{source_config['flag']} {operation} sync aborted: {e}")
            result = SyncResult(source=source_config['flag'], operation=operation, success=False, error=e)
        finally:
            source_api.close_connection()

        self.results.append(result)
        return result

    def sync_departments(self, source_name: str) -> SyncResult:
        """Run the department pass of one source."""
        return self._run_source_pass(source_name, 'departments')

    def sync_users(self, source_name: str) -> SyncResult:
        """Run the user pass of one source, including leaver deprovisioning."""
        return self._run_source_pass(source_name, 'users')

    def sync_source(self, source_name: str, departments: bool = True, users: bool = True) -> List[SyncResult]:
        """Run the passes of one source in order; the user pass is skipped if departments failed."""
        results = []
        if departments:
            results.append(self.sync_departments(source_name))
            if not results[-1].success and users:
                logger.warning(f"Skipping user sync for {source_name} because the department sync failed")
                return results
        if users:
            results.append(self.sync_users(source_name))
        return results

    def detect_department_drift(self) -> SyncResult:
        self._require_started()
        result = DriftDetector(self.directory, self.store, self.config['ldap']).detect_department_drift()
        self.results.append(result)
        return result

    def detect_user_drift(self) -> SyncResult:
        self._require_started()
        result = DriftDetector(self.directory, self.store, self.config['ldap']).detect_user_drift()
        self.results.append(result)
        return result

    def push_users(self, user_ids: List[int]) -> SyncResult:
        """Push stored users to the directory by id."""
        self._require_started()
        result = StorePush(self.directory, self.store, self.config['ldap']).push_users(user_ids)
        self.results.append(result)
        return result

    def push_groups(self, group_ids: List[int]) -> SyncResult:
        """Push stored departments and their members to the directory by id."""
        self._require_started()
        result = StorePush(self.directory, self.store, self.config['ldap']).push_groups(group_ids)
        self.results.append(result)
        return result

    # Complete invocations

    def run(self, source_name: Optional[str] = None, departments: bool = True, users: bool = True,
            detect_drift: bool = False, push_user_ids: Optional[List[int]] = None,
            push_group_ids: Optional[List[int]] = None) -> int:
        """
        Run one complete invocation.

        Without a ``source_name`` every enabled source is synced; a named source
        runs even when disabled. Store pushes and drift audits run after the
        source passes.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        started = time.time()
        self.results = []
        try:
            self.start()
            logger.info(f"Starting LDAP Reconcile {__version__}")

            if push_user_ids or push_group_ids or detect_drift:
                source_names = [source_name] if source_name else []
            elif source_name:
                source_names = [source_name]
            else:
                source_names = [source['name'] for source in self.config.get('sources', [])
                                if source.get('enabled', True)]

            for name in source_names:
                self.sync_source(name, departments=departments, users=users)

            if push_group_ids:
                self.push_groups(push_group_ids)
            if push_user_ids:
                self.push_users(push_user_ids)
            if detect_drift:
                self.detect_department_drift()
                self.detect_user_drift()

            runtime = time.time() - started
            self._log_run_summary(runtime)
            self._notify(runtime)

            failed = [result for result in self.results if not result.success]
            if failed:
                logger.warning(f"Run completed with {len(failed)} failed passes")
                return EXIT_PASS_FAILED
            logger.info("Run completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            self._send_failure_notification("Directory Connection Failed", str(e))
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Reconcile Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def run_forever(self, interval_minutes: int, last_exit_code: int = EXIT_OK, **run_options) -> int:
        """
        Wait ``interval_minutes`` and run the invocation again, until interrupted.

        Returns:
            Exit code of the last completed run
        """
        exit_code = last_exit_code
        try:
            while True:
                logger.info(f"Next run in {interval_minutes} minutes")
                time.sleep(interval_minutes * 60)
                exit_code = self.run(**run_options)
                if exit_code == EXIT_CONFIG_ERROR:
                    return exit_code
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping scheduled runs")
        return exit_code

    # Reporting

    def _log_run_summary(self, runtime_seconds: float):
        runtime_str = f"{runtime_seconds:.2f} seconds"
        if runtime_seconds > 60:
            minutes = int(runtime_seconds // 60)
            seconds = runtime_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Reconcile Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Passes run: {len(self.results)}")
        logger.info(f"Passes failed: {sum(1 for result in self.results if not result.success)}")
        for result in self.results:
            logger.info(f"  {result.summary} in {result.runtime_seconds:.2f}s")

    def _notify(self, runtime_seconds: float):
        notifications_config = self.config.get('notifications', {})
        for result in self.results:
            if not result.success:
                send_sync_failure(result, notifications_config)
        send_run_summary(self.results, runtime_seconds, notifications_config)

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        send_failure_notification(title, error_message, self.config.get('notifications', {}))

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory, store and source modules without syncing.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name, status, message):
            health_status['checks'][name] = {'status': status, 'message': message}
            if status == 'fail':
                health_status['status'] = 'unhealthy'

        try:
            if self.config is None:
                self._load_configuration()
            record('configuration', 'pass', 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', 'fail', f'Configuration error: {e}')
            return health_status

        with LDAPDirectory(self.config['ldap']) as directory:
            try:
                directory.connect(max_retries=1, retry_wait=0)
                record('directory', 'pass', 'LDAP connection successful')
            except DirectoryConnectionError as e:
                record('directory', 'fail', f'LDAP connection failed: {e}')

        try:
            with create_store(self.config.get('database')):
                record('store', 'pass', 'Store opened successfully')
        except ReconcileError as e:
            record('store', 'fail', f'Store unavailable: {e}')

        source_checks = {}
        for source_config in self.config.get('sources', []):
            try:
                with self._load_source_module(source_config):
                    pass
                source_checks[source_config['name']] = {'status': 'pass', 'message': 'Module loaded successfully'}
            except ConfigurationError as e:
                source_checks[source_config['name']] = {'status': 'fail', 'message': f'Module loading failed: {e}'}
                health_status['status'] = 'unhealthy'
        health_status['checks']['sources'] = source_checks

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing_fields = [name for name in ['smtp_server', 'email_from', 'email_to']
                              if not notifications_config.get(name)]
            if missing_fields:
                record('notifications', 'fail', f'Missing notification config: {missing_fields}')
            else:
                record('notifications', 'pass', 'Email notification configuration valid')
        else:
            record('notifications', 'skip', 'Email notifications disabled')

        return health_status

    def _cleanup(self):
        if self.directory:
            self.directory.disconnect()
            self.directory = None
        if self.store:
            self.store.close()
            self.store = None


def _id_list(value: str) -> List[int]:
    try:
        return [int(part) for part in value.split(',') if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated ids, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Reconcile HR/IM organization data into LDAP')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--source', '-s', help='Only sync this source (name or flag)')
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument('--departments-only', action='store_true', help='Skip the user pass')
    scope.add_argument('--users-only', action='store_true', help='Skip the department pass')
    parser.add_argument('--detect-drift', action='store_true',
                        help='Mark stored entries missing from the directory stale; sources sync only with --source')
    parser.add_argument('--push-users', type=_id_list, metavar='IDS',
                        help='Push stored users to the directory, e.g. 3,5,8')
    parser.add_argument('--push-groups', type=_id_list, metavar='IDS',
                        help='Push stored departments to the directory, e.g. 1,2')
    parser.add_argument('--interval', type=int, metavar='MINUTES',
                        help='Re-run every MINUTES minutes (overrides schedule.interval_minutes)')
    parser.add_argument('--health-check', action='store_true', help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true', help='Send test email notification')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    orchestrator = ReconcileOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_PASS_FAILED)

    if args.test_email:
        from ldap_reconcile import notifications
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        if notifications.test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(EXIT_OK)
        print("Failed to send test email")
        sys.exit(EXIT_PASS_FAILED)

    run_options = {
        'source_name': args.source,
        'departments': not args.users_only,
        'users': not args.departments_only,
        'detect_drift': args.detect_drift,
        'push_user_ids': args.push_users,
        'push_group_ids': args.push_groups,
    }

    exit_code = orchestrator.run(**run_options)
    interval = args.interval
    if interval is None and orchestrator.config:
        interval = orchestrator.config.get('schedule', {}).get('interval_minutes', 0)
    if interval and exit_code != EXIT_CONFIG_ERROR:
        exit_code = orchestrator.run_forever(interval, exit_code, **run_options)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
