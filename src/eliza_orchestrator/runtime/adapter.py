"""Container runtime adapter shelling out to the Podman or Docker CLI."""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from eliza_orchestrator.models import ContainerSpec, ContainerState, ExecResult, RuntimeStatus
from eliza_orchestrator.utils import get_logger, redact_env
from eliza_orchestrator.utils.exceptions import (
    InternalError,
    NameConflictError,
    RuntimeCommandError,
    RuntimeUnavailableError,
)

logger = get_logger(__name__)

PS_FORMAT = "{{.ID}}:{{.Names}}:{{.State}}:{{.Status}}"

# Exit codes produced by a regular stop (SIGINT, SIGKILL, SIGTERM)
_CLEAN_EXIT_CODES = {0, 130, 137, 143}

_EXIT_CODE = re.compile(r"exited \((-?\d+)\)", re.IGNORECASE)
_UPTIME = re.compile(
    r"^up\s+(?P<amount>\d+|about an?|less than an?)\s+(?P<unit>second|minute|hour|day|week)s?",
    re.IGNORECASE,
)
_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400, "week": 604800}
_NAME_CONFLICT_MARKERS = ("already in use", "already exists")
_PORT_MAPPING = re.compile(r"^(?P<container>\d+)(?:/\w+)?\s*->\s*(?:\[?[\w.:]*\]?:)?(?P<host>\d+)$")


@dataclass(frozen=True)
class CommandResult:
    """Captured output of one CLI invocation."""

    exit_code: int
    stdout: str
    stderr: str


def parse_ps_line(line: str) -> Tuple[str, str, str, str]:
    """
    Split one ``ps`` line in the ``ID:Names:State:Status`` schema.

    Args:
        line: Raw output line

    Returns:
        Tuple of (id, name, state, status)

    Raises:
        InternalError: If the line has fewer than four colon-separated fields
    """
    fields = line.rstrip().split(":", 3)
    if len(fields) < 4:
        raise InternalError(f"unparseable runtime ps line: {line.rstrip()!r}")
    container_id, name, state, status = (field.strip() for field in fields)
    return container_id, name, state, status


def map_runtime_state(state: str, status: str) -> ContainerState:
    """Map the runtime's textual state onto the abstract enum."""
    state = state.lower()
    if state == "running":
        return ContainerState.RUNNING
    if state in ("created", "configured", "initialized", "restarting"):
        return ContainerState.STARTING
    if state in ("exited", "stopped"):
        match = _EXIT_CODE.search(status)
        if match and int(match.group(1)) not in _CLEAN_EXIT_CODES:
            return ContainerState.FAILED
        return ContainerState.STOPPED
    if state == "dead":
        return ContainerState.FAILED
    return ContainerState.UNKNOWN


def parse_uptime(status: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Derive a start time from ``Up 5 minutes`` style status text."""
    match = _UPTIME.match(status.strip())
    if not match:
        return None
    amount = match.group("amount").lower()
    count = int(amount) if amount.isdigit() else (0 if amount.startswith("less") else 1)
    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=count * _UNIT_SECONDS[match.group("unit").lower()])


def parse_ps_output(output: str, name: str) -> RuntimeStatus:
    """
    Find the status of ``name`` in ``ps`` output.

    ``--filter name=`` matches substrings, so only an exact name match counts.

    Args:
        output: Complete ``ps`` stdout
        name: Container name

    Returns:
        RuntimeStatus, with state NOT_FOUND when no line matches
    """
    for line in output.splitlines():
        if not line.strip():
            continue
        container_id, line_name, state, status = parse_ps_line(line)
        if line_name != name:
            continue
        return RuntimeStatus(
            id=container_id,
            state=map_runtime_state(state, status),
            started_at=parse_uptime(status),
            raw_status=status,
        )
    return RuntimeStatus(id="", state=ContainerState.NOT_FOUND)


def parse_port_output(output: str) -> Dict[int, int]:
    """
    Parse ``port <name>`` output into container port -> host port.

    Lines look like ``5432/tcp -> 127.0.0.1:5432``; the first host binding of
    each container port wins.
    """
    ports: Dict[int, int] = {}
    for line in output.splitlines():
        match = _PORT_MAPPING.match(line.strip())
        if match is None:
            continue
        ports.setdefault(int(match.group("container")), int(match.group("host")))
    return ports


class RuntimeAdapter(ABC):
    """
    Uniform container operations over a runtime binary.

    This is the only layer that parses human-oriented CLI output; everything above
    it sees typed records.
    """

    kind = "runtime"

    def __init__(
        self,
        binary: str,
        command_timeout: float = 120.0,
        version_timeout: float = 5.0,
    ) -> None:
        """
        Initialize runtime adapter.

        Args:
            binary: Path or name of the runtime executable
            command_timeout: Timeout in seconds for regular CLI invocations
            version_timeout: Timeout in seconds for the version probe
        """
        self.binary = binary
        self.command_timeout = command_timeout
        self.version_timeout = version_timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(binary={self.binary!r})"

    async def _run(
        self,
        *args: str,
        action: str,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Invoke the runtime binary and capture its output.

        Args:
            *args: Arguments after the binary
            action: Description used in error messages
            timeout: Override of the command timeout
            check: Raise on a non-zero exit code

        Returns:
            CommandResult

        Raises:
            RuntimeUnavailableError: If the binary cannot be executed
            RuntimeCommandError: On timeout, or on failure when ``check`` is set
        """
        timeout = self.command_timeout if timeout is None else timeout
        logger.debug("Runtime command", extra={"runtime": self.kind, "argv": redact_env(args)})

        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise RuntimeUnavailableError(f"cannot execute {self.binary}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeCommandError(action, f"timed out after {timeout}s")

        result = CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.exit_code != 0:
            raise RuntimeCommandError(action, result.stderr, result.exit_code)
        return result

    async def runtime_available(self) -> str:
        """
        Check that the runtime answers with a version.

        Returns:
            First line of the version output

        Raises:
            RuntimeUnavailableError: If the binary is missing, fails or times out
        """
        try:
            result = await self._run(
                "version",
                action=f"query {self.kind} version",
                timeout=self.version_timeout,
            )
        except RuntimeCommandError as e:
            raise RuntimeUnavailableError(f"{self.binary} version failed: {e.stderr}")

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise RuntimeUnavailableError(f"{self.binary} version returned no output")
        return lines[0]

    @abstractmethod
    async def ensure_service(self) -> None:
        """Make sure the runtime's background service answers."""

    @abstractmethod
    async def image_exists(self, ref: str) -> bool:
        """Return True iff a locally tagged image matches ``ref`` exactly."""

    async def ensure_network(self, name: str) -> None:
        """Create a bridge network unless one with this name exists."""
        result = await self._run(
            "network", "ls", "--format", "{{.Name}}", action="list networks"
        )
        if name in {line.strip() for line in result.stdout.splitlines()}:
            logger.debug("Network exists", extra={"network": name})
            return

        await self._run("network", "create", name, action=f"create network {name}")
        logger.info("Network created", extra={"network": name})

    async def ensure_volume(self, name: str) -> None:
        """Create a named volume unless it exists."""
        result = await self._run(
            "volume", "ls", "--format", "{{.Name}}", action="list volumes"
        )
        if name in {line.strip() for line in result.stdout.splitlines()}:
            return
        await self._run("volume", "create", name, action=f"create volume {name}")
        logger.info("Volume created", extra={"volume": name})

    def build_run_args(self, spec: ContainerSpec) -> List[str]:
        """Render the ``run`` argument vector for a spec."""
        args = ["run", "-d", "--name", spec.name]
        if spec.network:
            args += ["--network", spec.network]
        for binding in spec.port_bindings:
            args += ["-p", binding.to_cli()]
        for entry in spec.environment:
            args += ["-e", entry]
        for mount in spec.volume_mounts:
            args += ["-v", mount.to_cli()]
        if spec.memory_limit:
            args += ["-m", spec.memory_limit]
        args.append(spec.image)
        return args

    async def create_and_start(self, spec: ContainerSpec) -> str:
        """
        Create a detached container and start it.

        Args:
            spec: Container specification

        Returns:
            Runtime container ID

        Raises:
            NameConflictError: If a container with this name already exists
            RuntimeCommandError: If the runtime refuses the container
        """
        result = await self._run(
            *self.build_run_args(spec),
            action=f"start {spec.name} container",
            check=False,
        )
        if result.exit_code != 0:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _NAME_CONFLICT_MARKERS) and "name" in stderr:
                raise NameConflictError(spec.name)
            raise RuntimeCommandError(f"start {spec.name} container", result.stderr, result.exit_code)

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise InternalError(f"runtime returned no container id for {spec.name}")
        return lines[-1]

    async def start_existing(self, name: str) -> None:
        await self._run("start", name, action=f"start existing {name} container")

    async def stop(self, name: str, timeout: int = 10) -> None:
        await self._run("stop", "-t", str(timeout), name, action=f"stop {name} container")

    async def remove(self, name: str, force: bool = True) -> None:
        args = ["rm", "-f", name] if force else ["rm", name]
        result = await self._run(*args, action=f"remove {name} container", check=False)
        if result.exit_code != 0 and "no such container" not in result.stderr.lower():
            raise RuntimeCommandError(f"remove {name} container", result.stderr, result.exit_code)

    async def restart(self, name: str) -> None:
        await self._run("restart", name, action=f"restart {name} container")

    async def status(self, name: str) -> RuntimeStatus:
        """
        Query the observed state of a container.

        Args:
            name: Container name

        Returns:
            RuntimeStatus parsed from ``ps``

        Raises:
            InternalError: If the output does not follow the colon schema
        """
        result = await self._run(
            "ps", "-a", "--format", PS_FORMAT, "--filter", f"name={name}",
            action=f"query {name} status",
        )
        return parse_ps_output(result.stdout, name)

    async def published_ports(self, name: str) -> Dict[int, int]:
        """Host ports a container publishes, keyed by container port; empty when none."""
        result = await self._run(
            "port", name, action=f"query {name} ports", check=False
        )
        if result.exit_code != 0:
            return {}
        return parse_port_output(result.stdout)

    async def exec(
        self, name: str, argv: Sequence[str], timeout: Optional[float] = None
    ) -> ExecResult:
        """Run a command inside a container and wait for it."""
        result = await self._run(
            "exec", name, *argv,
            action=f"exec in {name} container",
            timeout=timeout,
            check=False,
        )
        return ExecResult(exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)

    async def load_image(self, path: Path) -> None:
        """Import an image tarball."""
        await self._run("load", "-i", str(path), action=f"load image from {path.name}")
        logger.info("Image loaded", extra={"runtime": self.kind, "path": str(path)})

    async def logs(self, name: str, tail: int = 100) -> List[str]:
        """Collect the most recent log lines of a container."""
        result = await self._run(
            "logs", "--tail", str(tail), name, action=f"read {name} logs"
        )
        # Container processes write to both streams
        return (result.stdout + result.stderr).splitlines()

    async def _stream(self, *args: str, action: str) -> AsyncIterator[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise RuntimeUnavailableError(f"cannot execute {self.binary}: {e}")

        try:
            assert process.stdout is not None
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode("utf-8", errors="replace").rstrip()
            await process.wait()
            if process.returncode:
                raise RuntimeCommandError(action, "", process.returncode)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    def logs_stream(self, name: str, follow: bool = True) -> AsyncIterator[str]:
        """Yield log lines, following new output when ``follow`` is set."""
        args = ["logs", "--tail", "0", "-f", name] if follow else ["logs", name]
        return self._stream(*args, action=f"stream {name} logs")

    def pull(self, ref: str) -> AsyncIterator[str]:
        """Pull an image, yielding progress lines."""
        return self._stream("pull", ref, action=f"pull image {ref}")
