"""
Caddy process module for ProxyFlare.

This module is responsible for formatting, validating and reloading the running
Caddy instance, either inside a Docker container (through the Docker SDK) or as
a local binary.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import docker

from proxyflare.saga.errors import TransientIOError, ValidationError

COMMAND_TIMEOUT = 60


@dataclass
class RunningContainer:
    name: str
    image: str


class CaddyController:
    """
    Drives the Caddy process that serves the Caddyfile.
    """

    def __init__(
        self,
        caddyfile_path: Union[str, Path],
        container_path: str = "",
        container_name: str = "",
        docker_method: str = "plain",
        compose_file_path: str = "",
        caddy_binary_path: str = "caddy",
        validation_command: str = "",
        docker_client=None,
    ):
        """
        Initialize a CaddyController.

        Args:
            caddyfile_path: Host path of the Caddyfile
            container_path: Path of the Caddyfile inside the container
            container_name: Container (or compose service) running Caddy
            docker_method: "plain" to address the container by name, "compose"
                to look it up by compose service label
            compose_file_path: docker-compose file, substituted into the
                validation command
            caddy_binary_path: Local caddy binary when no container is used
            validation_command: Custom command with {path}, {container} and
                {compose_file} placeholders
            docker_client: Pre-built Docker client (mainly for tests)
        """
        self.caddyfile_path = Path(caddyfile_path)
        self.container_path = container_path
        self.container_name = container_name
        self.docker_method = docker_method
        self.compose_file_path = compose_file_path
        self.caddy_binary_path = caddy_binary_path or "caddy"
        self.validation_command = validation_command
        self.docker_client = docker_client
        self.logger = logging.getLogger("proxyflare.proxy.process")

    @property
    def uses_container(self) -> bool:
        return bool(self.container_name)

    def _client(self):
        if self.docker_client is not None:
            return self.docker_client
        try:
            self.docker_client = docker.from_env()
            self.docker_client.ping()
            self.logger.debug("Successfully connected to Docker daemon")
        except docker.errors.DockerException as e:
            self.logger.debug(f"Default Docker connection failed ({e}), trying socket path")
            try:
                self.docker_client = docker.DockerClient(
                    base_url="unix://var/run/docker.sock"
                )
                self.docker_client.ping()
            except docker.errors.DockerException as inner_e:
                self.docker_client = None
                raise TransientIOError(
                    f"cannot connect to Docker daemon: {inner_e}"
                ) from inner_e
        return self.docker_client

    def _container(self):
        client = self._client()
        try:
            if self.docker_method == "compose":
                matches = client.containers.list(
                    filters={"label": f"com.docker.compose.service={self.container_name}"}
                )
                if matches:
                    return matches[0]
            return client.containers.get(self.container_name)
        except docker.errors.NotFound as e:
            raise TransientIOError(
                f"Caddy container '{self.container_name}' not found"
            ) from e
        except docker.errors.DockerException as e:
            raise TransientIOError(
                f"failed to look up container '{self.container_name}': {e}"
            ) from e

    def _config_path(self) -> str:
        if self.uses_container and self.container_path:
            return self.container_path
        return str(self.caddyfile_path)

    def _exec(self, cmd: List[str]):
        container = self._container()
        try:
            result = container.exec_run(cmd)
        except docker.errors.DockerException as e:
            raise TransientIOError(f"'{' '.join(cmd)}' failed in container: {e}") from e
        output = result.output or b""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return result.exit_code, output

    def _run(self, cmd: List[str]):
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TransientIOError(f"'{' '.join(cmd)}' could not be run: {e}") from e
        return proc.returncode, (proc.stdout or "") + (proc.stderr or "")

    def format(self) -> bool:
        """
        Run `caddy fmt --overwrite` on the Caddyfile. Best effort.

        Returns:
            bool: True if formatting succeeded
        """
        cmd_tail = ["fmt", "--overwrite", self._config_path()]
        try:
            if self.uses_container:
                code, output = self._exec(["caddy"] + cmd_tail)
            else:
                code, output = self._run([self.caddy_binary_path] + cmd_tail)
        except TransientIOError as e:
            self.logger.debug(f"caddy fmt skipped: {e}")
            return False
        if code != 0:
            self.logger.debug(f"caddy fmt exited {code}: {output.strip()}")
            return False
        return True

    def validate_command(self) -> Optional[List[str]]:
        """The custom validation command with placeholders filled in, if configured."""
        if not self.validation_command:
            return None
        cmd = (
            self.validation_command.replace("{path}", self._config_path())
            .replace("{container}", self.container_name)
            .replace("{compose_file}", self.compose_file_path)
        )
        parts = shlex.split(cmd)
        if not parts:
            raise ValidationError("invalid validation command: empty command")
        return parts

    def validate(self) -> None:
        """
        Validate the Caddyfile.

        Raises:
            ValidationError: If Caddy rejects the configuration
            TransientIOError: If the validator could not be run at all
        """
        custom = self.validate_command()
        if custom is not None:
            code, output = self._run(custom)
            cmd_str = " ".join(custom)
        else:
            args = ["validate", "--config", self._config_path(), "--adapter", "caddyfile"]
            if self.uses_container:
                code, output = self._exec(["caddy"] + args)
                cmd_str = " ".join(["caddy"] + args)
            else:
                code, output = self._run([self.caddy_binary_path] + args)
                cmd_str = " ".join([self.caddy_binary_path] + args)

        if code != 0:
            raise ValidationError(
                f"validation command failed (exit {code})\nCommand: {cmd_str}\n"
                f"Output: {output.strip()}"
            )
        self.logger.info("Caddyfile validated")

    def reload(self) -> None:
        """
        Make Caddy pick up the Caddyfile: restart the container or run `caddy reload`.

        Raises:
            TransientIOError: If the restart or reload fails
        """
        if self.uses_container:
            container = self._container()
            try:
                container.restart()
            except docker.errors.DockerException as e:
                raise TransientIOError(f"restart of {self.container_name} failed: {e}") from e
            self.logger.info(f"Restarted Caddy container {self.container_name}")
            return

        code, output = self._run(
            [
                self.caddy_binary_path,
                "reload",
                "--config",
                str(self.caddyfile_path),
                "--adapter",
                "caddyfile",
            ]
        )
        if code != 0:
            raise TransientIOError(f"caddy reload failed (exit {code}): {output.strip()}")
        self.logger.info("Reloaded local Caddy")

    def list_running(self, filter_caddy: bool = True) -> List[RunningContainer]:
        """
        List running containers, optionally only those that look like Caddy.

        Args:
            filter_caddy: Keep only containers with "caddy" in name or image

        Returns:
            List[RunningContainer]: Containers sorted by name
        """
        try:
            containers = self._client().containers.list(filters={"status": "running"})
        except docker.errors.DockerException as e:
            raise TransientIOError(f"failed to list Docker containers: {e}") from e

        running = []
        for container in containers:
            tags = getattr(container.image, "tags", None) or []
            image = tags[0] if tags else getattr(container.image, "short_id", "")
            if filter_caddy and (
                "caddy" not in container.name.lower() and "caddy" not in image.lower()
            ):
                continue
            running.append(RunningContainer(name=container.name, image=image))

        running.sort(key=lambda c: c.name)
        return running
