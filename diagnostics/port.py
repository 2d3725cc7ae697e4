"""
Explain why the challenge server could not attach to its port.

Two usual causes: binding a privileged port without root, or some other
program (often the web server or reverse proxy) already listening there.
Both are reported on the BindError handed back to the orchestrator.
"""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from config import settings
from diagnostics import haproxy
from renewal.errors import BindError

if TYPE_CHECKING:
    from config import RenewConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortUser:
    pid: int
    name: str
    path: str

    def __str__(self) -> str:
        return f"- `{self.name}`\n\t\tpath: {self.path}"


@dataclass
class PortUsers:
    users: list[PortUser]
    unresolved: list[tuple[int, str]]   # (pid, reason)
    lookup_error: str = ""


def insufficient_permission(port: int) -> bool:
    return port <= 1024 and os.geteuid() != 0


def parse_lsof(output: str) -> list[tuple[int, str]]:
    """Parse ``lsof -F pc`` field output into (pid, command) pairs."""
    found: list[tuple[int, str]] = []
    pid = None
    for field_line in output.splitlines():
        if field_line.startswith("p") and field_line[1:].isdigit():
            pid = int(field_line[1:])
        elif field_line.startswith("c") and pid is not None:
            if all(p != pid for p, _ in found):
                found.append((pid, field_line[1:]))
    return found


def port_users(port: int) -> PortUsers:
    """Processes listening on TCP *port*, looked up with lsof."""
    try:
        result = subprocess.run(
            ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-F", "pc"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("lsof lookup for port %d failed: %s", port, exc)
        return PortUsers(users=[], unresolved=[], lookup_error=str(exc))

    users: list[PortUser] = []
    unresolved: list[tuple[int, str]] = []
    for pid, name in parse_lsof(result.stdout):
        try:
            path = os.readlink(f"/proc/{pid}/exe")
        except OSError as exc:
            unresolved.append((pid, str(exc)))
            continue
        users.append(PortUser(pid=pid, name=name, path=path))
    return PortUsers(users=users, unresolved=unresolved)


def cant_bind_port(config: RenewConfig, error: OSError) -> BindError:
    """Build a BindError for *config.port* explaining *error* as well as possible."""
    port = config.port
    report = BindError(port)

    if insufficient_permission(port):
        report.with_suggestion(
            "Insufficient permissions to attach to port. "
            "You normally need sudo to attach to ports below 1025"
        )
        report.with_note(f"port: {port}")

    found = port_users(port)
    if found.lookup_error:
        report.with_warning(f"Could not check which processes use port {port}: {found.lookup_error}")

    if (found.users or found.unresolved) and report.suggestion:
        report.with_note("The port is already in use")
    elif found.users or found.unresolved:
        report.with_suggestion("The port is already in use")
    if found.users:
        listed = "\n\t".join(str(u) for u in found.users)
        report.with_warning(f"Users:\n\t{listed}")
        if any(u.name.strip().lower() == "haproxy" for u in found.users):
            try:
                report.with_note(haproxy.report(port, Path(settings.HAPROXY_CONFIG_PATH)))
            except haproxy.HaproxyConfigError as exc:
                report.with_warning(str(exc))
    if found.unresolved:
        report.with_warning(f"Could not resolve name for pids: {found.unresolved}")

    logger.debug("Bind failure on port %d: %s", port, error)
    return report
