"""Container provisioning backends used by the fixture."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .errors import ProvisioningError

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Everything needed to start the database container."""

    name: str
    image: str
    env: Mapping[str, str] = field(default_factory=dict)
    command: tuple[str, ...] = ()
    network: str = ""
    mounts: tuple[str, ...] = ()
    ports: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class Container:
    """Handle for a running container."""

    id: str
    name: str
    image: str


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and combined output of a one-off command."""

    exit_code: int
    output: str = ""


@runtime_checkable
class Provisioner(Protocol):
    """Protocol implemented by container provisioners."""

    def launch(self, spec: LaunchSpec) -> Container:
        """Start a detached container and return its handle."""

    def purge(self, container: Container) -> None:
        """Remove the container and its volumes."""

    def expire(self, container: Container, seconds: int) -> None:
        """Arrange for the container to be removed after `seconds` even if nobody purges it."""

    def resolve_address(self, container: Container, network: str) -> str:
        """Host that reaches the container from the caller."""

    def resolve_port(self, container: Container, network: str, internal_port: int) -> int | None:
        """External port mapped to `internal_port`, or None while unassigned."""

    def exec(
        self,
        container: Container,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        mounts: Sequence[str] = (),
        remove: bool = True,
    ) -> CommandResult:
        """Run `command` in a sidecar sharing the container's network."""


class DockerProvisioner:
    """Provisioner driving the `docker` command line client."""

    def __init__(self, docker: str = "docker") -> None:
        self._docker = docker

    def launch(self, spec: LaunchSpec) -> Container:
        args = ["run", "-d", "--name", spec.name]
        for key, value in spec.env.items():
            args += ["-e", f"{key}={value}"]
        if spec.network:
            args += ["--network", spec.network]
        else:
            for port in spec.ports:
                args += ["-p", f"127.0.0.1::{port}"]
        for mount in spec.mounts:
            args += ["-v", mount]
        args.append(spec.image)
        args.extend(spec.command)
        result = self._run(args)
        if result.returncode != 0:
            raise ProvisioningError(f"Failed to start container '{spec.name}': {result.stderr.strip()}")
        container_id = result.stdout.strip()
        LOG.debug("Started container", extra={"container_name": spec.name, "container_id": container_id[:12]})
        return Container(id=container_id, name=spec.name, image=spec.image)

    def purge(self, container: Container) -> None:
        result = self._run(["rm", "-f", "-v", container.id])
        if result.returncode != 0:
            raise ProvisioningError(f"Failed to remove container '{container.name}': {result.stderr.strip()}")
        LOG.debug("Removed container", extra={"container_name": container.name})

    def expire(self, container: Container, seconds: int) -> None:
        script = "sleep {seconds}; {docker} rm -f -v {id} >/dev/null 2>&1".format(
            seconds=int(seconds),
            docker=shlex.quote(self._docker),
            id=shlex.quote(container.id),
        )
        try:
            subprocess.Popen(
                ["sh", "-c", script],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProvisioningError(f"Failed to schedule expiry for '{container.name}': {exc}") from exc

    def resolve_address(self, container: Container, network: str) -> str:
        if not network:
            return "localhost"
        networks = self._inspect(container).get("NetworkSettings", {}).get("Networks") or {}
        address = (networks.get(network) or {}).get("IPAddress")
        if not address:
            raise ProvisioningError(f"Container '{container.name}' has no address on network '{network}'")
        return str(address)

    def resolve_port(self, container: Container, network: str, internal_port: int) -> int | None:
        if network:
            return internal_port
        ports = self._inspect(container).get("NetworkSettings", {}).get("Ports") or {}
        for binding in ports.get(f"{internal_port}/tcp") or ():
            host_port = binding.get("HostPort")
            if host_port:
                return int(host_port)
        return None

    def exec(
        self,
        container: Container,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        mounts: Sequence[str] = (),
        remove: bool = True,
    ) -> CommandResult:
        args = ["run"]
        if remove:
            args.append("--rm")
        args += ["--network", f"container:{container.id}"]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        for mount in mounts:
            args += ["-v", mount]
        args.append(container.image)
        args.extend(command)
        result = self._run(args)
        return CommandResult(exit_code=result.returncode, output=(result.stdout + result.stderr).strip())

    def _inspect(self, container: Container) -> dict[str, Any]:
        result = self._run(["inspect", container.id])
        if result.returncode != 0:
            raise ProvisioningError(f"Container '{container.name}' is gone: {result.stderr.strip()}")
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ProvisioningError(f"Unreadable inspect output for '{container.name}'") from exc
        if not payload:
            raise ProvisioningError(f"Container '{container.name}' is gone")
        return payload[0]

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self._docker, *args]
        LOG.debug("$ %s", " ".join(_redact(cmd)))
        try:
            return subprocess.run(cmd, text=True, capture_output=True, check=False)
        except FileNotFoundError as exc:
            raise ProvisioningError("Docker is not installed or not on PATH.") from exc


def _redact(cmd: list[str]) -> list[str]:
    redacted: list[str] = []
    for previous, arg in zip(["", *cmd], cmd):
        if previous == "-e" and "PASSWORD=" in arg:
            arg = arg.split("=", 1)[0] + "=***"
        redacted.append(arg)
    return redacted


__all__ = [
    "CommandResult",
    "Container",
    "DockerProvisioner",
    "LaunchSpec",
    "Provisioner",
]
