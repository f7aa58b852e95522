# meshcontrol

Building blocks for the coordination server of a WireGuard-based mesh
network. The package turns registered nodes into the peer descriptions
clients expect, assembles and frames map responses, fans state updates out to
connected clients, counts registrations and updates, and provides helpers for
the protocol upgrade, the OIDC login checks and client configuration
profiles.

## Installation

```
pip install meshcontrol
```

With the `test` extra, the test suite can be run with pytest:

```
pip install "meshcontrol[test]"
pytest
```

## Modules

### `meshcontrol.tail`

- `User`, `Route` and `Node` dataclasses describe what the server keeps about
  a node. `Route.is_exit_route()` tells whether a route is `0.0.0.0/0` or
  `::/0`; `Node.is_expired()` compares the expiry with the current time;
  `Node.is_online()` is true when the node is not expired and was last seen
  within the last 60 seconds.
- `tail_node(node, cap_ver, dns_config, base_domain, random_client_port, tags)`
  builds a `TailNode`: host prefixes for the node's addresses, allowed IPs
  (own addresses, enabled primary routes and enabled exit routes), primary
  routes, the DERP address `127.3.3.40:<PreferredDERP>`, the name (the full
  `given_name.user.base_domain` name when the DNS config is proxied), the
  policy tags plus forced tags without duplicates, and capabilities: a
  capability map for capability version 74 and later, a capability list
  before that, with UPnP disabled below version 72. Node, machine and disco
  keys must be `nodekey:`, `mkey:` and `discokey:` followed by 64 hex
  characters; otherwise `ValueError` is raised.
- `tail_nodes(...)` converts a sequence of nodes, taking each node's tags
  from an optional `tags_of` callable.

### `meshcontrol.mapper`

- `Mapper` keeps the peer list of one connected node and produces
  `full_map_response`, `lite_map_response`, `keep_alive_response`,
  `derp_map_response`, `peer_changed_response` and `peer_removed_response`.
  Each returns the JSON-encoded `MapResponse`, zstd-compressed when the map
  request has `"Compress": "zstd"`, sealed with a NaCl box to the node's
  machine key when the mapper is not in Noise mode, and prefixed with its
  length as a little-endian 32-bit integer. Peers are sorted by id. When the
  `HEADSCALE_DEBUG_DUMP_MAPRESPONSE_PATH` environment variable is set, every
  request and response pair is also written as JSON under that directory.
- The policy argument is any object offering `generate_filter_and_ssh_rules`,
  `filter_nodes_by_acl`, `reduce_filter_rules` and `tags_of_node`; with
  `None`, no filtering is applied and the packet filter is empty.
- `DNSConfig`, `UserProfile` and `MapResponse` are the response records.
- Helpers on their own: `generate_user_profiles`, `generate_dns_config`
  (adds the node's user search domain and a route per user when MagicDNS is
  proxied), `add_nextdns_metadata` (adds device name, model and IP to NextDNS
  DoH resolver addresses), `filter_expired_and_not_ready`,
  `marshal_response`, `frame_body` and `zstd_encode`.

### `meshcontrol.notifier`

`Notifier` is a thread-safe registry of update channels keyed by machine key.
A channel is any object with a `put` method, such as `queue.Queue`.
`notify_all(update)` sends to every channel; `notify_with_ignore(update, *keys)`
skips the given machine keys.

### `meshcontrol.metrics`

`CounterVec` is a labelled counter with `inc(*labels)` and `value(*labels)`;
the number of label values must match the label names or `ValueError` is
raised. Two counters are defined: `node_registrations` (action, auth, status,
user) and `update_requests_sent_to_node` (user, node, status).

### `meshcontrol.noise`

`check_upgrade_header(headers)` returns the `Upgrade` header (case-insensitive)
or raises `UpgradeError`. `early_noise_payload(protocol_version,
challenge_public)` returns the magic bytes `\xff\xff\xffTS`, a big-endian
32-bit length and the JSON challenge for protocol version 49 and later, and
empty bytes before that; `write_early_noise` writes it to a binary stream.

### `meshcontrol.oidc`

`IDTokenClaims` (with `from_dict`), `OIDCSettings`, `new_state()` (32 hex
characters), `redirect_url`, `auth_code_url`, `determine_token_expiration`,
`validate_callback_params` and the `validate_allowed_domains`,
`validate_allowed_groups` and `validate_allowed_users` checks, which raise
`OIDCError` carrying the client message and HTTP status. `render_callback_page`
produces the HTML page shown after login.

### `meshcontrol.platform_config`

`windows_registry_config(url)` produces a `.reg` file,
`windows_config_message(url)` and `apple_config_message(url)` produce
instruction pages, and `apple_platform_config(platform, url)` produces a
configuration profile for `ios`, `macos-app-store` or `macos-standalone`,
raising `PlatformError` for any other platform.

## Examples

```python
from meshcontrol.platform_config import windows_registry_config

print(windows_registry_config("https://mesh.example.com"))
```

```python
from meshcontrol.oidc import IDTokenClaims, OIDCError, validate_allowed_domains

claims = IDTokenClaims.from_dict({"email": "alice@example.com"})
validate_allowed_domains(["example.com"], claims)  # passes
try:
    validate_allowed_domains(["example.org"], claims)
except OIDCError as err:
    print(err.status, err.message)  # 400 unauthorized principal (domain mismatch)
```

```python
import queue
from meshcontrol.notifier import Notifier

notifier = Notifier()
inbox = queue.Queue()
notifier.add_node("machine-a", inbox)
notifier.notify_all({"type": "full"})
print(inbox.get_nowait())
```

## What this package does not do

It is a library, not a running server. It has no HTTP or gRPC server, no
command-line tool, no database or other storage for users and nodes, and no
ACL policy engine (a policy object must be supplied to `Mapper`). It does not
perform the Noise handshake, and it does not talk to an OIDC provider: token
exchange and ID token verification are left to the caller.