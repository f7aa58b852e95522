"""Construction and encoding of the map responses streamed to nodes."""

from __future__ import annotations

import copy
import dataclasses
import ipaddress
import json
import logging
import os
import secrets
import string
import struct
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence, Union
from urllib.parse import urlencode

import zstandard
from nacl.public import Box, PrivateKey, PublicKey

from meshcontrol.tail import Node, TailNode, User, tail_node, tail_nodes

logger = logging.getLogger(__name__)

NEXTDNS_DOH_PREFIX = "https://dns.nextdns.io"
RESERVED_RESPONSE_HEADER_SIZE = 4
MAPPER_ID_LENGTH = 8
DEBUG_MAP_RESPONSE_PERM = 0o755
DEBUG_DUMP_ENV = "HEADSCALE_DEBUG_DUMP_MAPRESPONSE_PATH"
ZSTD_COMPRESSION = "zstd"

_MACHINE_KEY_PREFIX = "mkey:"
_DNS_SAFE_ALPHABET = string.ascii_lowercase + string.digits
_ACRONYMS = {
    "id": "ID",
    "ids": "IDs",
    "ip": "IP",
    "ips": "IPs",
    "derp": "DERP",
    "dns": "DNS",
    "ssh": "SSH",
    "url": "URL",
}


@dataclass
class DNSConfig:
    """DNS settings pushed to clients. Resolvers are resolver addresses."""

    resolvers: list[str] = field(default_factory=list)
    routes: dict[str, list[str]] = field(default_factory=dict)
    domains: list[str] = field(default_factory=list)
    proxied: bool = False


@dataclass
class UserProfile:
    """Public description of a user owning nodes in the netmap."""

    id: int = 0
    login_name: str = ""
    display_name: str = ""


@dataclass
class MapResponse:
    """A network map update; unset fields are left out when encoded."""

    keep_alive: bool = False
    control_time: Optional[datetime] = None
    node: Optional[TailNode] = None
    derp_map: Any = None
    peers: Optional[list[TailNode]] = None
    peers_changed: Optional[list[TailNode]] = None
    peers_removed: Optional[list[int]] = None
    dns_config: Optional[DNSConfig] = None
    domain: Optional[str] = None
    collect_services: Optional[str] = None
    packet_filter: Optional[list[Any]] = None
    user_profiles: Optional[list[UserProfile]] = None
    ssh_policy: Any = None
    debug: Optional[dict[str, Any]] = None
    online_change: Optional[dict[int, bool]] = None


class _AccessPolicy(Protocol):
    def generate_filter_and_ssh_rules(
        self, node: Node, peers: Sequence[Node]
    ) -> tuple[list[Any], Any]: ...

    def filter_nodes_by_acl(
        self, node: Node, nodes: Sequence[Node], rules: Sequence[Any]
    ) -> list[Node]: ...

    def reduce_filter_rules(self, node: Node, rules: Sequence[Any]) -> list[Any]: ...

    def tags_of_node(self, node: Node) -> list[str]: ...


def _go_name(name: str) -> str:
    return "".join(_ACRONYMS.get(part, part.capitalize()) for part in name.split("_"))


def _format_time(value: datetime) -> str:
    text = value.isoformat()
    if value.utcoffset() == timedelta(0):
        text = text.replace("+00:00", "Z")
    return text


def _jsonable(value: Any) -> Any:
    if isinstance(value, DNSConfig):
        return {
            "Resolvers": [{"Addr": addr} for addr in value.resolvers],
            "Routes": {k: [{"Addr": a} for a in v] for k, v in value.routes.items()},
            "Domains": list(value.domains),
            "Proxied": value.proxied,
        }
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _go_name(f.name): _jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(
        value,
        (
            ipaddress.IPv4Address,
            ipaddress.IPv6Address,
            ipaddress.IPv4Network,
            ipaddress.IPv6Network,
        ),
    ):
        return str(value)
    return value


def _to_json(value: Any) -> bytes:
    return json.dumps(_jsonable(value), separators=(",", ":")).encode()


def _public_key(machine_key: Union[str, bytes, PublicKey]) -> PublicKey:
    if isinstance(machine_key, PublicKey):
        return machine_key
    if isinstance(machine_key, bytes):
        return PublicKey(machine_key)
    if not machine_key.startswith(_MACHINE_KEY_PREFIX):
        raise ValueError(f"invalid machine key {machine_key!r}: missing prefix")
    raw = machine_key[len(_MACHINE_KEY_PREFIX):]
    try:
        data = bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"invalid machine key {machine_key!r}: not hex") from exc
    if len(data) != PublicKey.SIZE:
        raise ValueError(f"invalid machine key {machine_key!r}: wrong length")
    return PublicKey(data)


def _seal(private_key: PrivateKey, machine_key: PublicKey, data: bytes) -> bytes:
    return bytes(Box(private_key, machine_key).encrypt(data))


def _random_dns_safe(length: int) -> str:
    return "".join(secrets.choice(_DNS_SAFE_ALPHABET) for _ in range(length))


def generate_user_profiles(
    node: Node, peers: Iterable[Node], base_domain: str
) -> list[UserProfile]:
    """One profile per distinct user name among the node and its peers."""
    users: dict[str, User] = {node.user.name: node.user}
    for peer in peers:
        users[peer.user.name] = peer.user
    return [
        UserProfile(
            id=user.id,
            login_name=user.name,
            display_name=f"{user.name}@{base_domain}" if base_domain else user.name,
        )
        for user in users.values()
    ]


def generate_dns_config(
    base: Optional[DNSConfig],
    base_domain: str,
    node: Node,
    peers: Iterable[Node],
) -> Optional[DNSConfig]:
    """DNS config for ``node``; with MagicDNS adds its search domain and user routes."""
    if base is None:
        return None
    config = copy.deepcopy(base)
    if base.proxied:
        # Only the node's own user goes in the search domains; shared
        # nodes are reached through their full name.
        config.domains.append(f"{node.user.name}.{base_domain}")
        users = dict.fromkeys([node.user, *(peer.user for peer in peers)])
        for user in users:
            config.routes[f"{user.name}.{base_domain}"] = []
    add_nextdns_metadata(config.resolvers, node)
    return config


def add_nextdns_metadata(resolvers: list[str], node: Node) -> None:
    """Append device metadata to every NextDNS DoH resolver address, in place."""

    def decorate(addr: str) -> str:
        if not addr.startswith(NEXTDNS_DOH_PREFIX):
            return addr
        attrs = {
            "device_name": node.hostname,
            "device_model": node.host_info.get("OS", ""),
        }
        if node.ip_addresses:
            attrs["device_ip"] = str(node.ip_addresses[0])
        return f"{addr}?{urlencode(sorted(attrs.items()))}"

    resolvers[:] = [decorate(addr) for addr in resolvers]


def filter_expired_and_not_ready(peers: Iterable[Node]) -> list[Node]:
    """Drop peers that are expired and have no endpoints."""
    return [peer for peer in peers if not peer.is_expired() or peer.endpoints]


def marshal_response(
    resp: Any,
    is_noise: bool,
    private_key: Optional[PrivateKey],
    machine_key: Union[str, bytes, PublicKey],
) -> bytes:
    """Encode ``resp`` as JSON, sealed to ``machine_key`` on the legacy protocol."""
    body = _to_json(resp)
    if not is_noise and private_key is not None:
        return _seal(private_key, _public_key(machine_key), body)
    return body


def frame_body(body: bytes) -> bytes:
    """Prefix ``body`` with its length as a little-endian 32-bit integer."""
    return struct.pack("<I", len(body)) + body


def zstd_encode(data: bytes) -> bytes:
    """Compress ``data`` with zstd at the fastest level."""
    return zstandard.ZstdCompressor(level=1).compress(data)


class Mapper:
    """Builds map responses for one node and tracks the peers it knows of."""

    def __init__(
        self,
        node: Node,
        peers: Iterable[Node],
        private_key: Optional[PrivateKey],
        is_noise: bool,
        cap_ver: int,
        derp_map: Any,
        base_domain: str,
        dns_config: Optional[DNSConfig],
        logtail: bool,
        random_client_port: bool,
    ) -> None:
        logger.debug("creating new mapper for %s (noise=%s)", node.hostname, is_noise)
        self.private_key = private_key
        self.is_noise = is_noise
        self.cap_ver = cap_ver
        self.derp_map = derp_map
        self.base_domain = base_domain
        self.dns_config = dns_config
        self.logtail = logtail
        self.random_client_port = random_client_port
        self.uid = _random_dns_safe(MAPPER_ID_LENGTH)
        self.created = datetime.now().astimezone()
        self.seq = 0
        self._seq_lock = threading.Lock()
        self._lock = threading.Lock()
        self._peers: dict[int, Node] = {peer.id: peer for peer in peers}

    def __str__(self) -> str:
        return f"Mapper: {{ seq: {self.seq}, uid: {self.uid}, created: {self.created} }}"

    def full_map_response(
        self, map_request: Mapping[str, Any], node: Node, policy: Optional[_AccessPolicy]
    ) -> bytes:
        """Complete map including all known peers."""
        with self._lock:
            resp = self._base_with_config(node, policy)
            peers = list(self._peers.values())
            self._append_peer_changes(resp, policy, node, peers, peers)
            return self._marshal(map_request, resp, node)

    def lite_map_response(
        self, map_request: Mapping[str, Any], node: Node, policy: Optional[_AccessPolicy]
    ) -> bytes:
        """Map without peers, for requests that omit them."""
        resp = self._base_with_config(node, policy)
        return self._marshal(map_request, resp, node)

    def keep_alive_response(self, map_request: Mapping[str, Any], node: Node) -> bytes:
        resp = self._base()
        resp.keep_alive = True
        return self._marshal(map_request, resp, node)

    def derp_map_response(
        self, map_request: Mapping[str, Any], node: Node, derp_map: Any
    ) -> bytes:
        resp = self._base()
        resp.derp_map = derp_map
        return self._marshal(map_request, resp, node)

    def peer_changed_response(
        self,
        map_request: Mapping[str, Any],
        node: Node,
        changed: Sequence[Node],
        policy: Optional[_AccessPolicy],
    ) -> bytes:
        """Record ``changed`` peers and send them as an incremental update."""
        with self._lock:
            for peer in changed:
                self._peers[peer.id] = peer
            resp = self._base()
            self._append_peer_changes(
                resp, policy, node, list(self._peers.values()), list(changed)
            )
            return self._marshal(map_request, resp, node)

    def peer_removed_response(
        self, map_request: Mapping[str, Any], node: Node, removed: Iterable[int]
    ) -> bytes:
        """Forget ``removed`` peers and tell the node they are gone."""
        removed = list(removed)
        with self._lock:
            for peer_id in removed:
                self._peers.pop(peer_id, None)
            resp = self._base()
            resp.peers_removed = removed
            return self._marshal(map_request, resp, node)

    def _base(self) -> MapResponse:
        return MapResponse(keep_alive=False, control_time=datetime.now().astimezone())

    def _base_with_config(
        self, node: Node, policy: Optional[_AccessPolicy]
    ) -> MapResponse:
        resp = self._base()
        tags = policy.tags_of_node(node) if policy is not None else None
        resp.node = tail_node(
            node,
            self.cap_ver,
            self.dns_config,
            self.base_domain,
            self.random_client_port,
            tags,
        )
        resp.derp_map = self.derp_map
        resp.domain = self.base_domain
        # Clients must not collect services we do nothing with.
        resp.collect_services = "false"
        resp.debug = {"DisableLogTail": not self.logtail}
        return resp

    def _append_peer_changes(
        self,
        resp: MapResponse,
        policy: Optional[_AccessPolicy],
        node: Node,
        peers: list[Node],
        changed: list[Node],
    ) -> None:
        full_change = len(peers) == len(changed)

        if policy is not None:
            rules, ssh_policy = policy.generate_filter_and_ssh_rules(node, peers)
        else:
            rules, ssh_policy = [], {"Rules": []}

        changed = filter_expired_and_not_ready(changed)
        if rules and policy is not None:
            changed = policy.filter_nodes_by_acl(node, changed, rules)

        profiles = generate_user_profiles(node, changed, self.base_domain)
        dns_config = generate_dns_config(self.dns_config, self.base_domain, node, peers)

        tail_peers = tail_nodes(
            changed,
            self.cap_ver,
            self.dns_config,
            self.base_domain,
            self.random_client_port,
            policy.tags_of_node if policy is not None else None,
        )
        tail_peers.sort(key=lambda peer: peer.id)

        if full_change:
            resp.peers = tail_peers
        else:
            resp.peers_changed = tail_peers
        resp.dns_config = dns_config
        resp.packet_filter = (
            list(policy.reduce_filter_rules(node, rules)) if policy is not None else []
        )
        resp.user_profiles = profiles
        resp.ssh_policy = ssh_policy
        resp.online_change = {peer.id: peer.is_online() for peer in peers}

    def _next_seq(self) -> int:
        with self._seq_lock:
            self.seq += 1
            return self.seq

    def _marshal(
        self, map_request: Mapping[str, Any], resp: MapResponse, node: Node
    ) -> bytes:
        seq = self._next_seq()
        machine_key = _public_key(node.machine_key)
        json_body = _to_json(resp)

        dump_path = os.environ.get(DEBUG_DUMP_ENV, "")
        if dump_path:
            self._dump(dump_path, map_request, resp, node, seq)

        if map_request.get("Compress", "") == ZSTD_COMPRESSION:
            body = zstd_encode(json_body)
        else:
            body = json_body

        if not self.is_noise:
            if self.private_key is None:
                raise ValueError("legacy protocol requires a server private key")
            body = _seal(self.private_key, machine_key, body)

        return frame_body(body)

    def _dump(
        self,
        dump_path: str,
        map_request: Mapping[str, Any],
        resp: MapResponse,
        node: Node,
        seq: int,
    ) -> None:
        directory = Path(dump_path) / node.hostname
        directory.mkdir(mode=DEBUG_MAP_RESPONSE_PERM, parents=True, exist_ok=True)
        target = directory / f"{time.time_ns()}-{self.uid}-{seq}.json"
        logger.debug("writing map response to %s", target)
        target.write_bytes(_to_json({"MapRequest": map_request, "MapResponse": resp}))
        target.chmod(DEBUG_MAP_RESPONSE_PERM)