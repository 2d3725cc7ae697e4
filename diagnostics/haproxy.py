"""
Find out where haproxy forwards traffic arriving on a port.

When haproxy already holds the challenge port the most useful hint is the
backend port it forwards that traffic to: the challenge server can listen
there instead (``--port``).

Only the parts of haproxy.cfg that matter for this are understood:
``frontend``/``listen``/``backend`` sections and their ``bind``, ``server``,
``default_backend`` and ``use_backend`` lines.  Everything else is skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_PROXY_SECTIONS = {"frontend", "listen", "backend"}
_OTHER_SECTIONS = {"global", "defaults", "userlist", "peers", "resolvers", "mailers", "program", "cache"}


class HaproxyConfigError(Exception):
    """The haproxy configuration is unreadable or inconsistent."""


@dataclass
class Section:
    kind: str                                        # frontend | listen | backend
    name: str
    binds: list[int] = field(default_factory=list)
    servers: list[int] = field(default_factory=list)
    backends: list[str] = field(default_factory=list)


def _port(address: str) -> Optional[int]:
    """Port of ``host:port`` / ``:port`` / ``[v6]:port``; None if absent."""
    _, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return None
    return int(port)


def parse_sections(config_text: str) -> list[Section]:
    sections: list[Section] = []
    current: Optional[Section] = None

    for raw in config_text.splitlines():
        text = raw.split("#", 1)[0].strip()
        if not text:
            continue
        words = text.split()
        keyword = words[0]

        if keyword in _PROXY_SECTIONS:
            name = words[1] if len(words) > 1 else ""
            current = Section(kind=keyword, name=name)
            # "listen NAME ADDR:PORT" / "frontend NAME ADDR:PORT" (old style bind)
            if len(words) > 2 and keyword != "backend":
                port = _port(words[2])
                if port is not None:
                    current.binds.append(port)
            sections.append(current)
            continue
        if keyword in _OTHER_SECTIONS:
            current = None
            continue
        if current is None:
            continue

        if keyword == "bind" and len(words) > 1:
            for address in words[1].split(","):
                port = _port(address)
                if port is not None:
                    current.binds.append(port)
        elif keyword == "server" and len(words) > 2:
            port = _port(words[2])
            if port is not None:
                current.servers.append(port)
        elif keyword in ("default_backend", "use_backend") and len(words) > 1:
            current.backends.append(words[1])

    return sections


def forwarded_ports(config_text: str, bound_port: int) -> list[int]:
    """
    Ports haproxy forwards traffic for *bound_port* to.

    Raises HaproxyConfigError when more than one frontend (or listen)
    section binds *bound_port*, when both a frontend and a listen section
    do, or when a frontend names a backend that does not exist.
    """
    sections = parse_sections(config_text)
    backends = {s.name: s.servers for s in sections if s.kind == "backend"}
    frontends = [s for s in sections if s.kind == "frontend" and bound_port in s.binds]
    listens = [s for s in sections if s.kind == "listen" and bound_port in s.binds]

    if frontends and listens:
        raise HaproxyConfigError(
            "Incorrect haproxy config, a listen and frontend section bind to the same port"
        )
    if len(listens) > 1:
        raise HaproxyConfigError("Incorrect haproxy, only one listen section can bind to the same port")
    if len(frontends) > 1:
        raise HaproxyConfigError("Incorrect haproxy, only one frontend section can bind to the same port")

    if listens:
        return list(listens[0].servers)
    if not frontends:
        return []

    frontend = frontends[0]
    ports: list[int] = []
    for backend in frontend.backends:
        if backend not in backends:
            raise HaproxyConfigError(
                f"Incorrect haproxy config, backend '{backend}' in frontend "
                f"'{frontend.name}' does not exist"
            )
        for port in backends[backend]:
            if port not in ports:
                ports.append(port)
    return ports


def report(bound_port: int, config_path: Path) -> str:
    """One line describing where haproxy sends traffic for *bound_port*."""
    try:
        text = config_path.read_text()
    except OSError as exc:
        raise HaproxyConfigError(f"Could not read haproxy cfg {config_path}") from exc
    ports = forwarded_ports(text, bound_port)
    logger.debug("haproxy forwards %d to %s", bound_port, ports)
    return f"haproxy is forwarding {bound_port} to port(s): {ports}"
