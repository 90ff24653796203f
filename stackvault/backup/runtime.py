"""
Container runtime wrapper.

Container state and file copies go through the Docker SDK. Client binaries
inside containers (mysqldump, psql, redis-cli, clickhouse-client) run through
``docker exec`` because their stdin/stdout are streamed to and from local
files. Commands are always argument vectors; secrets are forwarded with
``docker exec -e NAME`` so they only live in the child environment.
"""

import logging
import os
import posixpath
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, IO, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound as DockerNotFound

from stackvault.exceptions import DependencyMissing, ServiceUnavailable, ToolInvocationFailure


logger = logging.getLogger(__name__)


class ContainerRuntime:
    """
    Thin facade over the Docker engine used by adapters and restore.

    The SDK client is created lazily so that commands which never touch a
    container (listing, retention, scheduling) work without a daemon.
    """

    def __init__(self, client=None, docker_binary: str = 'docker', timeout: int = 3600):
        """
        Args:
            client: Optional pre-built ``docker.DockerClient``
            docker_binary: Name or path of the docker CLI used for exec
            timeout: Default timeout in seconds for exec calls
        """
        self._client = client
        self.docker_binary = docker_binary
        self.timeout = timeout

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise DependencyMissing(f"Docker engine not reachable: {e}")
        return self._client

    def _get(self, name: str):
        try:
            return self.client.containers.get(name)
        except DockerNotFound:
            raise ServiceUnavailable(f"Container not found: {name}")
        except APIError as e:
            raise ToolInvocationFailure(f"Docker API error for {name}: {e}")

    def is_running(self, name: str) -> bool:
        """Return True if the named container exists and is running."""
        try:
            container = self._get(name)
        except ServiceUnavailable:
            return False
        return container.status == 'running'

    def stop(self, name: str):
        logger.info(f"Stopping container {name}")
        try:
            self._get(name).stop()
        except APIError as e:
            raise ToolInvocationFailure(f"Failed to stop {name}: {e}")

    def start(self, name: str):
        logger.info(f"Starting container {name}")
        try:
            self._get(name).start()
        except APIError as e:
            raise ToolInvocationFailure(f"Failed to start {name}: {e}")

    def copy_from(self, name: str, source_path: str, dest_path: Path):
        """
        Copy a single file out of a container.

        Args:
            name: Container name
            source_path: Absolute file path inside the container
            dest_path: Local destination file

        Raises:
            ToolInvocationFailure: If the file cannot be read from the container
        """
        container = self._get(name)
        try:
            stream, _ = container.get_archive(source_path)
            with tempfile.TemporaryFile() as buf:
                for chunk in stream:
                    buf.write(chunk)
                buf.seek(0)

                with tarfile.open(fileobj=buf) as tar:
                    member = tar.next()
                    if member is None or not member.isfile():
                        raise ToolInvocationFailure(f"{name}:{source_path} is not a regular file")
                    fileobj = tar.extractfile(member)
                    with open(dest_path, 'wb') as out:
                        shutil.copyfileobj(fileobj, out)
        except (APIError, DockerNotFound) as e:
            raise ToolInvocationFailure(f"Failed to copy {name}:{source_path}: {e}")

    def copy_to(self, name: str, source_path: Path, dest_path: str):
        """
        Copy a local file into a container (running or stopped).

        Args:
            name: Container name
            source_path: Local file to copy
            dest_path: Absolute destination path inside the container

        Raises:
            ToolInvocationFailure: If the engine rejects the upload
        """
        container = self._get(name)
        dest_dir, dest_name = posixpath.split(dest_path)

        def _normalize(info):
            info.mode = 0o644
            return info

        try:
            with tempfile.TemporaryFile() as buf:
                with tarfile.open(fileobj=buf, mode='w') as tar:
                    tar.add(str(source_path), arcname=dest_name, filter=_normalize)
                buf.seek(0)
                if not container.put_archive(dest_dir, buf.read()):
                    raise ToolInvocationFailure(f"Docker refused upload to {name}:{dest_path}")
        except APIError as e:
            raise ToolInvocationFailure(f"Failed to copy to {name}:{dest_path}: {e}")

    def exec(
        self,
        name: str,
        argv: List[str],
        stdin: Optional[IO] = None,
        stdout: Optional[IO] = None,
        env: Optional[Dict[str, Optional[str]]] = None,
        timeout: Optional[int] = None
    ) -> subprocess.CompletedProcess:
        """
        Run a command inside a container and wait for it.

        Args:
            name: Container name
            argv: Command and arguments executed inside the container
            stdin: Optional file object piped to the command (enables ``-i``)
            stdout: Optional file object receiving stdout; captured otherwise
            env: Variables forwarded into the container; None values are skipped
            timeout: Seconds before the call is abandoned

        Returns:
            CompletedProcess (stdout is bytes when captured)

        Raises:
            DependencyMissing: If the docker CLI is not installed
            ToolInvocationFailure: On non-zero exit or timeout
        """
        cmd = [self.docker_binary, 'exec']
        if stdin is not None:
            cmd.append('-i')

        child_env = os.environ.copy()
        for key, value in (env or {}).items():
            if value is None:
                continue
            cmd.extend(['-e', key])
            child_env[key] = str(value)

        cmd.append(name)
        cmd.extend(argv)
        timeout = timeout or self.timeout

        logger.debug(f"docker exec {name}: {argv[0]}")
        try:
            result = subprocess.run(
                cmd,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=child_env,
                timeout=timeout,
                check=False
            )
        except FileNotFoundError:
            raise DependencyMissing(f"docker executable not found: {self.docker_binary}")
        except subprocess.TimeoutExpired:
            raise ToolInvocationFailure(f"{argv[0]} in {name} timed out after {timeout}s")

        if result.returncode != 0:
            stderr = (result.stderr or b'').decode(errors='replace').strip()
            raise ToolInvocationFailure(
                f"{argv[0]} in {name} exited with {result.returncode}: {stderr}",
                returncode=result.returncode,
                stderr=stderr
            )

        return result

    def exec_output(self, name: str, argv: List[str], env: Optional[Dict[str, Optional[str]]] = None,
                    timeout: Optional[int] = None) -> str:
        """Run a command inside a container and return its decoded stdout."""
        result = self.exec(name, argv, env=env, timeout=timeout)
        return (result.stdout or b'').decode(errors='replace')
