"""Fork provider backed by the Tiger Cloud control-plane CLI."""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from forkmesh.core.errors import ForkProviderError
from forkmesh.core.models import Fork, ForkOptions, ForkStrategy, utcnow
from forkmesh.forks.provider import ForkProvider

logger = structlog.get_logger(__name__)

_SERVICE_ID_PATTERN = re.compile(r"New Service ID:\s*([a-z0-9]+)", re.IGNORECASE)
_HOST_PATTERN = re.compile(r"@([^:/]+)[:/]")


def service_id_from_url(database_url: str) -> str:
    """Extract the service id from a host like ``abc123.xyz.tsdb.cloud.timescale.com``."""
    match = _HOST_PATTERN.search(database_url)
    if match:
        service = re.match(r"^([a-z0-9]+)\.", match.group(1))
        if service:
            return service.group(1)
    raise ValueError("Could not extract service ID from database URL")


def build_fork_args(service_id: str, options: ForkOptions) -> List[str]:
    args = ["service", "fork", service_id]
    if options.strategy is ForkStrategy.NOW:
        args.append("--now")
    elif options.strategy is ForkStrategy.LAST_SNAPSHOT:
        args.append("--last-snapshot")
    else:
        if not options.timestamp:
            raise ForkProviderError("timestamp is required for to-timestamp strategy")
        args += ["--to-timestamp", options.timestamp]
    if options.name:
        args += ["--name", options.name]
    if options.cpu:
        args += ["--cpu", options.cpu]
    if options.memory:
        args += ["--memory", options.memory]
    if not options.wait_for_completion:
        args.append("--no-wait")
    args += ["--output", "json"]
    return args


def parse_fork_output(stdout: str, stderr: str, parent_id: str) -> Fork:
    """Build a Fork from CLI output.

    The CLI prints JSON on stdout and a human readable ``New Service ID`` line
    on stderr; the stderr id wins when both are present.
    """
    try:
        result: Dict[str, Any] = json.loads(stdout) if stdout.strip() else {}
    except json.JSONDecodeError:
        result = {}
    match = _SERVICE_ID_PATTERN.search(stderr or "")
    fork_id = (match.group(1) if match else None) or result.get("service_id") or result.get("id")
    if not fork_id:
        raise ForkProviderError("Fork command did not report a service id")
    return Fork(
        id=fork_id,
        name=result.get("name") or f"{parent_id}-fork",
        status=result.get("status") or "READY",
        created_at=result.get("created") or result.get("created_at") or utcnow().isoformat(),
        parent_id=parent_id,
    )


class TigerForkProvider(ForkProvider):
    def __init__(self, service_id: str, *, binary: str = "tiger") -> None:
        self._service_id = service_id
        self._binary = binary

    @property
    def service_id(self) -> str:
        return self._service_id

    async def _run(self, args: Sequence[str]) -> Tuple[str, str]:
        logger.debug("tiger_command", args=list(args))
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ForkProviderError(f"Could not run {self._binary}: {exc}") from exc
        stdout, stderr = await process.communicate()
        out, err = stdout.decode(), stderr.decode()
        if process.returncode != 0:
            raise ForkProviderError(
                f"{self._binary} {' '.join(args[:2])} exited with {process.returncode}: {err.strip()}"
            )
        return out, err

    async def create_fork(self, options: ForkOptions) -> Fork:
        logger.info("fork_creating", service_id=self._service_id, strategy=options.strategy.value)
        stdout, stderr = await self._run(build_fork_args(self._service_id, options))
        fork = parse_fork_output(stdout, stderr, self._service_id)
        logger.info("fork_created", fork_id=fork.id, fork_name=fork.name)
        return fork

    async def delete_fork(self, fork_id: str) -> None:
        _, stderr = await self._run(["service", "delete", fork_id, "--confirm"])
        if stderr:
            logger.warning("tiger_delete_stderr", fork_id=fork_id, stderr=stderr.strip())
        logger.info("fork_deleted", fork_id=fork_id)

    async def get_connection_string(self, fork_id: str) -> str:
        stdout, _ = await self._run(["service", "connection-string", fork_id, "--output", "json"])
        return parse_connection_string(stdout)

    async def list_services(self) -> List[Fork]:
        stdout, _ = await self._run(["service", "list", "--output", "json"])
        try:
            services = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ForkProviderError(f"Failed to list database services: {exc}") from exc
        return [
            Fork(
                id=service.get("service_id") or service.get("id"),
                name=service.get("name", ""),
                status=service.get("status", ""),
                created_at=service.get("created") or service.get("created_at") or "",
                parent_id=service.get("parent_service_id"),
            )
            for service in services
        ]


def parse_connection_string(stdout: str) -> str:
    try:
        result: Optional[Dict[str, Any]] = json.loads(stdout)
    except json.JSONDecodeError:
        result = None
    if isinstance(result, dict):
        value = result.get("connection_string") or result.get("connectionString")
        if value:
            return value
    return stdout.strip()
