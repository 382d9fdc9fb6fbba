# imrelay

`imrelay` provides the pieces of a horizontally scaled instant-messaging push
service, split into three tiers:

- **comet** (`imrelay.comet`) – the edge tier that holds client connections.
  Connections are grouped into `Bucket`s, joined to `Room`s, buffer client
  frames in a fixed-size `Ring`, and receive server pushes through a
  `Channel`.
- **logic** (`imrelay.logic`) – the control tier. `Logic` authenticates
  connections and keeps the key → server and member → key mappings in Redis
  through `Dao`, picks edge nodes for new clients with a weighted
  `LoadBalancer`, aggregates per-room online counts, and publishes
  `PushMsg` records for delivery. `create_app` exposes it over HTTP.
- **job** (`imrelay.job`) – configuration of the delivery tier.

## Comet building blocks

```python
from imrelay.comet.bucket import Bucket
from imrelay.comet.channel import Channel
from imrelay.comet.config import default_config, parse_flags

conf = default_config(parse_flags([], {}))

bucket = Bucket(conf.bucket)             # starts conf.bucket.routine_amount worker threads
ch = Channel(conf.protocol.cli_proto, conf.protocol.svr_proto, dict)
ch.key = "session-key"
ch.ip = "127.0.0.1"
ch.watch(1000, 1001)

bucket.put("live://1000", ch)
print(bucket.channel_count(), bucket.rooms())   # 1 {'live://1000'}

bucket.broadcast_room("live://1000", {"body": b"hello"})  # delivered by a worker
print(ch.ready(timeout=1))

bucket.close()                            # stop the workers
```

- `Bucket.put` registers a channel under its key; an older channel with the
  same key is sent `PROTO_FINISH` via `Channel.close`. `Bucket.delete`
  removes it again and drops its room once empty. `change_room` moves a
  channel between rooms (an empty id leaves all rooms).
- `Bucket.broadcast(proto, op)` pushes to every channel that watches `op`;
  `rooms_count`, `ip_count` and `up_rooms_count` report and record online
  figures.
- `Channel.push` raises `SignalFullError` rather than block when the
  channel's queue is full; `Channel.ready(timeout)` raises `TimeoutError`
  when nothing arrives in time. `signal()` queues `PROTO_READY`, `close()`
  queues `PROTO_FINISH` (both from `imrelay.comet.channel`).
- A `Room` lists members newest first (`channels()`). Once its last member
  leaves it is dropped, and further `put` calls raise `RoomDroppedError`.
  `online_num()` returns the count across all servers when known, else the
  local count.
- `Ring(num, factory)` rounds its capacity up to a power of two and raises
  `RingEmptyError` or `RingFullError` when no read or write slot is
  available.
- `Whitelist(mids, log_path)` (or `init_whitelist(conf.whitelist)`) tells
  whether a member id is traced and appends timestamped lines to its log
  with `printf`.

All comet errors derive from `CometError` in `imrelay.comet.errors`.

## Configuration

Each tier has a `config` module (`imrelay.comet.config`,
`imrelay.logic.config`, `imrelay.job.config`) with the same three functions:

- `parse_flags(argv, environ)` reads flags such as `-conf`, `-region`,
  `-zone`, `-deploy.env` and `-host` (comet also takes `-addrs`, `-weight`,
  `-offline`, `-debug`; logic takes `-weight`). Unset flags fall back to the
  `REGION`, `ZONE`, `DEPLOY_ENV`, `ADDRS`, `WEIGHT`, `OFFLINE` and `DEBUG`
  environment variables.
- `default_config(options)` builds the defaults from those flags.
- `load_config(path, options)` reads a TOML file over the defaults. Keys
  match field names case-insensitively, ignoring underscores (`ReadBufSize`
  sets `read_buf_size`). Durations may be written as strings such as
  `"1m30s"` or `"100ms"`, or as numbers of seconds; see
  `imrelay.comet.config.parse_duration`. Values of the wrong type raise
  `ValueError`.

## Logic service

```python
from imrelay.logic.config import load_config, parse_flags
from imrelay.logic.dao import Dao
from imrelay.logic.service import Logic
from imrelay.logic.webapi import create_app

config = load_config("logic.toml", parse_flags([], {}))   # needs [Node] and [Redis] tables
dao = Dao.from_config(config, producer)   # producer: any object with send(topic, key, value)
logic = Logic(config, dao)

app = create_app(logic)                   # a Flask application
```

`Dao` stores mappings in Redis (`mid_<mid>` hashes and `key_<key>` strings,
expiring after `Redis.Expire`) and per-server online counts in `ol_<server>`
hashes spread over 64 slots (`room_slot`). `push_msg`,
`broadcast_room_msg` and `broadcast_msg` hand a `PushMsg` (encoded as JSON
by `PushMsg.encode`) to the producer on the configured Kafka topic.
`Dao(config, redis_client, producer)` accepts any Redis client object.

`Logic` offers `connect`, `disconnect`, `heartbeat`, `renew_online`,
`receive`, `nodes_weighted`, `nodes_instances`, `online_top`,
`online_room`, `online_total` and the `push_keys`, `push_mids`,
`push_room`, `push_all` calls. Feed it the edge instances you know of with
`update_nodes({zone: [Instance, ...]})`; instances marked offline or with
unreadable counters are skipped. `run_online_loop(stop)` reloads online
counts every 10 seconds until the `threading.Event` is set, forgetting
servers that have not reported for 5 minutes.

### HTTP API

`create_app(logic)` serves these routes; `serve(logic, config.http_server)`
runs the app with Flask's built-in server and requires `HTTPServer.Addr` in
`host:port` form (the default `"3111"` has no colon and is rejected).

| Method | Path                    | Query                          | Purpose                                  |
|--------|-------------------------|--------------------------------|------------------------------------------|
| POST   | `/goim/push/keys`       | `operation`, `keys`            | push the request body to connection keys |
| POST   | `/goim/push/mids`       | `operation`, `mids`            | push to every connection of members      |
| POST   | `/goim/push/room`       | `operation`, `type`, `room`    | push to a room                           |
| POST   | `/goim/push/all`        | `operation`, `speed`           | broadcast to every connection            |
| GET    | `/goim/online/top`      | `type`, `limit`                | busiest rooms of a type                  |
| GET    | `/goim/online/room`     | `type`, `rooms`                | online counts of named rooms             |
| GET    | `/goim/online/total`    |                                | total IPs and connections                |
| GET    | `/goim/nodes/weighted`  | `platform`                     | edge nodes chosen for a client           |
| GET    | `/goim/nodes/instances` |                                | all known edge instances                 |

Every response has status 200 and a JSON body
`{"code": ..., "message": ..., "data": ...}` built by `result_body`; `data`
is left out when empty. `code` is `0` on success, `-400` for a bad request
and `-500` for a server failure (`ResultCode`). Web clients
(`platform=web`) receive node domains, others node addresses.

Room keys combine a type and a room id as `type://room`; use
`encode_room_key` and `decode_room_key` from `imrelay.logic.model`.

## Load balancing

```python
from imrelay.logic.balancer import LoadBalancer

lb = LoadBalancer()
lb.update(instances)          # Instances carrying weight, conn_count and addrs metadata
domains, addrs = lb.node_addrs("sh", ".example.com", 1.6)
```

Nodes in the client's region have their weight multiplied by the region
weight; the best node counts one more connection each call, and at most
five nodes are returned, best first. An empty update, or one that would
shrink the node set to less than half, is ignored.

## What this package does not do

- It has no client-facing TCP or WebSocket server for the edge tier and no
  wire format for client frames: buckets, rooms, channels and rings hold
  whatever objects you give them.
- There is no RPC between the tiers. The edge and logic tiers are plain
  Python objects you wire together yourself.
- The job tier has configuration only; nothing here consumes push messages
  from a queue or fans them out to edge servers.
- There is no message-queue or service-discovery client: `Dao` needs a
  producer object you provide, and `Logic.update_nodes` takes the instances
  you pass it.
- No geolocation is done; every client is treated as of unknown region.
- No command-line programs are installed.