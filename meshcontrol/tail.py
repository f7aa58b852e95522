"""Conversion of registered nodes into the peer records sent to clients."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

CAPABILITY_FILE_SHARING = "https://tailscale.com/cap/file-sharing"
CAPABILITY_ADMIN = "https://tailscale.com/cap/is-admin"
CAPABILITY_SSH = "https://tailscale.com/cap/ssh"
NODE_ATTR_RANDOMIZE_CLIENT_PORT = "randomize-client-port"
NODE_ATTR_DISABLE_UPNP = "disable-upnp"

# 74: client understands the capability map.
CAP_MAP_VERSION = 74
# 72: UPnP issue fixed in clients; UPnP may be used again.
UPNP_FIXED_VERSION = 72

DERP_MAGIC_IP = "127.3.3.40"
KEEP_ALIVE_INTERVAL = timedelta(seconds=60)
MAX_FQDN_LENGTH = 255

NODE_KEY_PREFIX = "nodekey:"
MACHINE_KEY_PREFIX = "mkey:"
DISCO_KEY_PREFIX = "discokey:"
_KEY_HEX_LENGTH = 64

_EXIT_ROUTES = (
    ipaddress.ip_network("0.0.0.0/0"),
    ipaddress.ip_network("::/0"),
)


@dataclass(frozen=True)
class User:
    """An owner of nodes."""

    id: int = 0
    name: str = ""


@dataclass
class Route:
    """A subnet route advertised by a node."""

    prefix: IPNetwork
    advertised: bool = False
    enabled: bool = False
    is_primary: bool = False

    def __post_init__(self) -> None:
        self.prefix = ipaddress.ip_network(self.prefix)

    def is_exit_route(self) -> bool:
        """Whether the route is a default route (IPv4 or IPv6)."""
        return self.prefix in _EXIT_ROUTES


@dataclass
class Node:
    """A node registered with the control server."""

    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    ip_addresses: list[IPAddress] = field(default_factory=list)
    hostname: str = ""
    given_name: str = ""
    user_id: int = 0
    user: User = field(default_factory=User)
    forced_tags: list[str] = field(default_factory=list)
    last_seen: Optional[datetime] = None
    expiry: Optional[datetime] = None
    host_info: dict[str, Any] = field(default_factory=dict)
    endpoints: list[str] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.ip_addresses = [ipaddress.ip_address(a) for a in self.ip_addresses]

    def is_expired(self) -> bool:
        """Whether the node key has passed its expiry time."""
        if self.expiry is None:
            return False
        return datetime.now(timezone.utc) > self.expiry

    def is_online(self) -> bool:
        """Whether the node was seen within the keep-alive interval."""
        if self.last_seen is None or self.is_expired():
            return False
        return self.last_seen > datetime.now(timezone.utc) - KEEP_ALIVE_INTERVAL


@dataclass
class TailNode:
    """The peer description handed to clients in a map response."""

    id: int
    stable_id: str
    name: str
    user: int
    key: str
    key_expiry: Optional[datetime]
    machine: str
    disco_key: str
    addresses: list[IPNetwork]
    allowed_ips: list[IPNetwork]
    endpoints: list[str]
    derp: str
    hostinfo: dict[str, Any]
    created: Optional[datetime]
    tags: list[str]
    primary_routes: list[IPNetwork]
    last_seen: Optional[datetime]
    online: bool
    machine_authorized: bool
    capabilities: list[str] = field(default_factory=list)
    cap_map: dict[str, list[Any]] = field(default_factory=dict)


def _parse_key(text: str, prefix: str, kind: str) -> str:
    if not text.startswith(prefix):
        raise ValueError(f"invalid {kind} key {text!r}: missing {prefix!r} prefix")
    raw = text[len(prefix):]
    if len(raw) != _KEY_HEX_LENGTH:
        raise ValueError(f"invalid {kind} key {text!r}: wrong length")
    try:
        data = bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"invalid {kind} key {text!r}: not hex") from exc
    return prefix + data.hex()


def _host_prefix(address: IPAddress) -> IPNetwork:
    return ipaddress.ip_network(f"{address}/{address.max_prefixlen}")


def _fqdn(node: Node, dns_config: Any, base_domain: str) -> str:
    if dns_config is not None and getattr(dns_config, "proxied", False):
        if not node.given_name:
            raise ValueError("node has no given name")
        hostname = f"{node.given_name}.{node.user.name}.{base_domain}"
        if len(hostname) > MAX_FQDN_LENGTH:
            raise ValueError(
                f"hostname {hostname!r} is longer than {MAX_FQDN_LENGTH} characters"
            )
        return hostname
    return node.given_name


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def tail_node(
    node: Node,
    cap_ver: int,
    dns_config: Any,
    base_domain: str,
    random_client_port: bool,
    tags: Optional[Sequence[str]] = None,
) -> TailNode:
    """Build the client-facing description of ``node``.

    ``tags`` are the tags the policy grants the node; forced tags are added.
    Raises ValueError when a key cannot be parsed or the name is invalid.
    """
    node_key = _parse_key(node.node_key, NODE_KEY_PREFIX, "node")
    machine_key = _parse_key(node.machine_key, MACHINE_KEY_PREFIX, "machine")
    disco_key = _parse_key(node.disco_key, DISCO_KEY_PREFIX, "disco")

    addresses = [_host_prefix(a) for a in node.ip_addresses]
    allowed_ips = list(addresses)
    primary_routes: list[IPNetwork] = []
    for route in node.routes:
        if not route.enabled:
            continue
        if route.is_primary:
            allowed_ips.append(route.prefix)
            primary_routes.append(route.prefix)
        elif route.is_exit_route():
            allowed_ips.append(route.prefix)

    net_info = node.host_info.get("NetInfo")
    preferred = net_info.get("PreferredDERP", 0) if net_info is not None else 0
    derp = f"{DERP_MAGIC_IP}:{preferred}"

    hostname = _fqdn(node, dns_config, base_domain)

    result = TailNode(
        id=node.id,
        stable_id=str(node.id),
        name=hostname,
        user=node.user_id,
        key=node_key,
        key_expiry=node.expiry,
        machine=machine_key,
        disco_key=disco_key,
        addresses=addresses,
        allowed_ips=allowed_ips,
        endpoints=list(node.endpoints),
        derp=derp,
        hostinfo=dict(node.host_info),
        created=node.created_at,
        tags=_unique([*(tags or ()), *node.forced_tags]),
        primary_routes=primary_routes,
        last_seen=node.last_seen,
        online=node.is_online(),
        machine_authorized=not node.is_expired(),
    )

    if cap_ver >= CAP_MAP_VERSION:
        result.cap_map = {
            CAPABILITY_FILE_SHARING: [],
            CAPABILITY_ADMIN: [],
            CAPABILITY_SSH: [],
        }
        if random_client_port:
            result.cap_map[NODE_ATTR_RANDOMIZE_CLIENT_PORT] = []
    else:
        result.capabilities = [CAPABILITY_FILE_SHARING, CAPABILITY_ADMIN, CAPABILITY_SSH]
        if random_client_port:
            result.capabilities.append(NODE_ATTR_RANDOMIZE_CLIENT_PORT)

    if cap_ver < UPNP_FIXED_VERSION:
        result.capabilities.append(NODE_ATTR_DISABLE_UPNP)

    return result


def tail_nodes(
    nodes: Iterable[Node],
    cap_ver: int,
    dns_config: Any,
    base_domain: str,
    random_client_port: bool,
    tags_of: Optional[Callable[[Node], Sequence[str]]] = None,
) -> list[TailNode]:
    """Convert every node; ``tags_of`` maps a node to its policy tags."""
    return [
        tail_node(
            node,
            cap_ver,
            dns_config,
            base_domain,
            random_client_port,
            tags_of(node) if tags_of is not None else None,
        )
        for node in nodes
    ]


__all__ = [
    "User",
    "Route",
    "Node",
    "TailNode",
    "tail_node",
    "tail_nodes",
    "Mapping",
]