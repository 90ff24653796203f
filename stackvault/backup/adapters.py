"""
Target adapters: one per supported data service.

Each adapter produces a single dump file for its target inside an output
directory. Dumps are written to ``<name>.tmp`` and renamed into place only
after the client exited successfully, so a visible artifact is always
complete.

Supports:
- MysqlAdapter: mysqldump --all-databases
- PostgresAdapter: pg_dumpall
- RedisAdapter: BGSAVE snapshot copied out of the data volume
- ClickhouseAdapter: per-table DDL + SQLInsert rows concatenated into one file
"""

import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List

from stackvault.exceptions import ServiceUnavailable, ToolInvocationFailure
from stackvault.settings import BackupSettings, TargetSettings
from .artifacts import BackupArtifact, TargetKind, artifact_filename
from .runtime import ContainerRuntime


logger = logging.getLogger(__name__)


class TargetAdapter:
    """
    Base class for target adapters.

    Subclasses implement ``_dump`` which writes the raw dump to a path.
    """

    kind: TargetKind = None

    def __init__(self, runtime: ContainerRuntime, settings: TargetSettings, timeout: int = 3600):
        """
        Args:
            runtime: Container runtime used for liveness checks and exec
            settings: Container name and credentials for this target
            timeout: Seconds allowed for each client invocation
        """
        self.runtime = runtime
        self.settings = settings
        self.timeout = timeout

    @property
    def container(self) -> str:
        return self.settings.container

    def is_live(self) -> bool:
        return self.runtime.is_running(self.container)

    def produce(self, output_dir: Path, timestamp: str) -> BackupArtifact:
        """
        Produce a dump of the target.

        Args:
            output_dir: Date partition directory receiving the artifact
            timestamp: Run timestamp (``YYYYMMDD_HHMMSS``)

        Returns:
            The uncompressed BackupArtifact

        Raises:
            ServiceUnavailable: If the target container is not running
            ToolInvocationFailure: If the client exits non-zero or times out
        """
        if not self.is_live():
            raise ServiceUnavailable(f"{self.kind.value} container '{self.container}' is not running")

        logger.info(f"Dumping {self.kind.value} from container {self.container}")
        final_path = Path(output_dir) / artifact_filename(self.kind, timestamp)
        temp_path = final_path.with_name(final_path.name + '.tmp')

        try:
            self._dump(temp_path)
        except Exception:
            # Never leave a partial dump behind
            if temp_path.exists():
                temp_path.unlink()
            raise

        os.replace(temp_path, final_path)
        return BackupArtifact(kind=self.kind, timestamp=timestamp, path=final_path)

    def restore(self, path: Path):
        """
        Replay an uncompressed dump into the live target.

        Raises:
            ServiceUnavailable: If the target container is not running
            ToolInvocationFailure: If the client exits non-zero or times out
        """
        if not self.is_live():
            raise ServiceUnavailable(f"{self.kind.value} container '{self.container}' is not running")
        logger.info(f"Replaying {Path(path).name} into {self.kind.value} container {self.container}")
        self._replay(Path(path))

    def _dump(self, path: Path):
        raise NotImplementedError

    def _replay(self, path: Path):
        with open(path, 'rb') as dump:
            self.runtime.exec(
                self.container,
                self._restore_argv(),
                stdin=dump,
                env=self._credentials_env(),
                timeout=self.timeout
            )

    def _restore_argv(self) -> List[str]:
        raise NotImplementedError

    def _credentials_env(self) -> dict:
        return {}


class MysqlAdapter(TargetAdapter):
    """Full logical dump of every MySQL database."""

    kind = TargetKind.MYSQL

    def _credentials_env(self) -> dict:
        return {'MYSQL_PWD': self.settings.password}

    def _dump(self, path: Path):
        with open(path, 'wb') as out:
            self.runtime.exec(
                self.container,
                ['mysqldump', '-u', self.settings.user, '--all-databases'],
                stdout=out,
                env=self._credentials_env(),
                timeout=self.timeout
            )

    def _restore_argv(self) -> List[str]:
        return ['mysql', '-u', self.settings.user]


class PostgresAdapter(TargetAdapter):
    """Cluster-wide dump via pg_dumpall (roles, schemas and data)."""

    kind = TargetKind.POSTGRES

    def _credentials_env(self) -> dict:
        return {'PGPASSWORD': self.settings.password}

    def _dump(self, path: Path):
        with open(path, 'wb') as out:
            self.runtime.exec(
                self.container,
                ['pg_dumpall', '-U', self.settings.user],
                stdout=out,
                env=self._credentials_env(),
                timeout=self.timeout
            )

    def _restore_argv(self) -> List[str]:
        return ['psql', '-U', self.settings.user, '-d', 'postgres']


class RedisAdapter(TargetAdapter):
    """
    RDB snapshot of a Redis instance.

    Triggers BGSAVE, polls ``INFO persistence`` until the background save is
    no longer in progress, checks it succeeded, then copies the dump file out
    of the container.
    """

    kind = TargetKind.REDIS

    def __init__(self, runtime: ContainerRuntime, settings: TargetSettings, timeout: int = 3600,
                 snapshot_timeout: int = 300, poll_interval: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(runtime, settings, timeout)
        self.snapshot_timeout = snapshot_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep

    def _cli(self, *args: str) -> List[str]:
        argv = ['redis-cli']
        if self.settings.tls:
            argv.extend(['--tls', '--insecure'])
        if self.settings.port:
            argv.extend(['-p', str(self.settings.port)])
        argv.extend(args)
        return argv

    def _run(self, *args: str) -> str:
        return self.runtime.exec_output(
            self.container,
            self._cli(*args),
            env={'REDISCLI_AUTH': self.settings.password},
            timeout=self.timeout
        ).strip()

    @staticmethod
    def _parse_info(output: str) -> dict:
        info = {}
        for line in output.splitlines():
            if ':' in line and not line.startswith('#'):
                key, _, value = line.partition(':')
                info[key.strip()] = value.strip()
        return info

    def wait_for_snapshot(self, previous_lastsave: str = None):
        """
        Block until no background save is running.

        When ``previous_lastsave`` is given, the wait also lasts until
        ``LASTSAVE`` moved past it, so a save that has not started yet is not
        mistaken for a finished one.

        Raises:
            ToolInvocationFailure: If the save failed or did not finish in time
        """
        deadline = time.monotonic() + self.snapshot_timeout

        while True:
            info = self._parse_info(self._run('INFO', 'persistence'))
            if info.get('rdb_bgsave_in_progress', '0') == '0':
                status = info.get('rdb_last_bgsave_status', 'ok')
                if status != 'ok':
                    raise ToolInvocationFailure(f"Redis background save failed (status: {status})")
                if previous_lastsave is None or self._run('LASTSAVE') != previous_lastsave:
                    return

            if time.monotonic() >= deadline:
                raise ToolInvocationFailure(
                    f"Redis background save still running after {self.snapshot_timeout}s"
                )
            self.sleep(self.poll_interval)

    def _dump(self, path: Path):
        lastsave = self._run('LASTSAVE')
        reply = self._run('BGSAVE')
        # "already in progress" still ends in a fresh snapshot once it completes
        if not reply.startswith('Background saving') and 'already in progress' not in reply:
            raise ToolInvocationFailure(f"Redis BGSAVE rejected: {reply}")

        self.wait_for_snapshot(lastsave)
        self.runtime.copy_from(self.container, self.settings.data_path, path)

    def _replay(self, path: Path):
        # Redis only loads the snapshot at startup
        self.runtime.stop(self.container)
        try:
            self.runtime.copy_to(self.container, path, self.settings.data_path)
        finally:
            self.runtime.start(self.container)


class ClickhouseAdapter(TargetAdapter):
    """
    Text export of every non-system ClickHouse database.

    Tables are exported one after another; there is no snapshot spanning the
    whole export, and the file header says so.
    """

    kind = TargetKind.CLICKHOUSE

    SYSTEM_DATABASES = {'system', 'INFORMATION_SCHEMA', 'information_schema'}

    @staticmethod
    def _quote(identifier: str) -> str:
        return '`' + identifier.replace('`', '\\`') + '`'

    def _argv(self, query: str, *options: str) -> List[str]:
        argv = ['clickhouse-client']
        if self.settings.user:
            argv.extend(['--user', self.settings.user])
        argv.extend(options)
        argv.extend(['--query', query])
        return argv

    def _credentials_env(self) -> dict:
        return {'CLICKHOUSE_PASSWORD': self.settings.password}

    def _restore_argv(self) -> List[str]:
        argv = ['clickhouse-client', '--multiquery']
        if self.settings.user:
            argv.extend(['--user', self.settings.user])
        return argv

    def _list(self, query: str) -> List[str]:
        output = self.runtime.exec_output(self.container, self._argv(query), env=self._credentials_env(),
                                          timeout=self.timeout)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _dump(self, path: Path):
        with open(path, 'wb') as out:
            header = (
                "-- ClickHouse Database Backup\n"
                f"-- Generated: {datetime.now().isoformat(timespec='seconds')}\n"
                "-- Tables are exported sequentially without a consistent snapshot;\n"
                "-- rows written during the export may or may not be included.\n\n"
            )
            out.write(header.encode())

            for database in self._list('SHOW DATABASES'):
                if database in self.SYSTEM_DATABASES:
                    continue

                db_name = self._quote(database)
                out.write(
                    f"-- Database: {database}\n"
                    f"CREATE DATABASE IF NOT EXISTS {db_name};\n"
                    f"USE {db_name};\n\n".encode()
                )

                for table in self._list(f"SHOW TABLES FROM {db_name}"):
                    qualified = f"{db_name}.{self._quote(table)}"
                    out.write(f"-- Table: {database}.{table}\n".encode())

                    ddl = self.runtime.exec_output(
                        self.container,
                        self._argv(f"SHOW CREATE TABLE {qualified}", '--format', 'TSVRaw'),
                        env=self._credentials_env(),
                        timeout=self.timeout
                    ).strip()
                    out.write(f"{ddl};\n\n".encode())
                    out.flush()

                    # Rows stream straight into the file after the DDL
                    self.runtime.exec(
                        self.container,
                        self._argv(
                            f"SELECT * FROM {qualified} FORMAT SQLInsert",
                            f"--output_format_sql_insert_table_name={table}"
                        ),
                        stdout=out,
                        env=self._credentials_env(),
                        timeout=self.timeout
                    )
                    out.write(b"\n")


ADAPTERS = {
    TargetKind.MYSQL: MysqlAdapter,
    TargetKind.POSTGRES: PostgresAdapter,
    TargetKind.REDIS: RedisAdapter,
    TargetKind.CLICKHOUSE: ClickhouseAdapter,
}


def create_adapter(kind, runtime: ContainerRuntime, settings: BackupSettings) -> TargetAdapter:
    """
    Factory function to create the adapter for a target kind.

    Args:
        kind: TargetKind or its string value
        runtime: Shared container runtime
        settings: Backup settings holding per-target configuration

    Returns:
        TargetAdapter instance
    """
    kind = TargetKind.parse(kind)
    adapter_cls = ADAPTERS[kind]
    target_settings = settings.target(kind.value)

    if adapter_cls is RedisAdapter:
        return RedisAdapter(
            runtime,
            target_settings,
            timeout=settings.command_timeout,
            snapshot_timeout=settings.snapshot_timeout
        )
    return adapter_cls(runtime, target_settings, timeout=settings.command_timeout)
