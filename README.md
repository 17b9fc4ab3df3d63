# l4router

l4router routes raw TCP and UDP connections. Every incoming connection is
wrapped so that its first bytes can be inspected by *matchers* without being
consumed; the first route whose matchers agree hands the connection to a
chain of *handlers*.

Matchers that ship with the package:

| name        | matches on                                             |
|-------------|--------------------------------------------------------|
| `remote_ip` | client address inside one of the given IPs / CIDRs     |
| `local_ip`  | local address inside one of the given IPs / CIDRs      |
| `not`       | negation of one or more nested matcher sets            |
| `clock`     | the time of day the connection was wrapped             |
| `dns`       | a DNS request, optionally filtered by allow/deny rules |

Handlers that ship with the package:

| name    | does                                       |
|---------|--------------------------------------------|
| `echo`  | writes back everything it reads            |
| `close` | closes the connection                      |

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running from the command line

Write a JSON configuration and start the router with it:

```
l4router config.json
```

Options:

- `--validate` loads and provisions the configuration, prints
  `Valid configuration` and exits.
- `--log-level {DEBUG,INFO,WARNING,ERROR}` sets the logging level
  (default `INFO`).

The router runs until interrupted (Ctrl-C or SIGTERM), then closes its
sockets. The configuration may be the app object itself or a document with
the app under `{"apps": {"layer4": ...}}`.

A configuration holds named servers. Each server lists the addresses it
listens on and its routes; a route has a list of matcher sets under `match`
(sets are OR'ed, matchers inside a set are AND'ed) and a list of handlers
under `handle`, each naming its module with the `handler` key:

```json
{
  "servers": {
    "echo": {
      "listen": ["tcp/127.0.0.1:5000", "udp/127.0.0.1:5000"],
      "matching_timeout": "3s",
      "idle_timeout": "30s",
      "routes": [
        {
          "match": [{"remote_ip": {"ranges": ["127.0.0.0/8"]}}],
          "handle": [{"handler": "echo"}]
        },
        {
          "handle": [{"handler": "close"}]
        }
      ]
    }
  }
}
```

Listen addresses have the form `[network/]host[:port[-port]]`; the network
is one of `tcp`, `tcp4`, `tcp6`, `udp`, `udp4`, `udp6` (default `tcp`), or
`unix`, `unixgram`, `unixpacket` followed by a socket path. A port range
opens one socket per port. Placeholders such as `{env.NAME}` are expanded.

Timeouts are numbers of seconds or duration strings such as `500ms`, `3s`,
`1h30m` or `2d`. `matching_timeout` (default 3s) bounds the matching phase;
`idle_timeout` (default 30s) is how long a UDP association stays open
without traffic.

A route without matchers matches every connection. Connections that need
more bytes before a matcher can decide are read further, up to the matching
timeout and at most 16 KiB; connections that do not finish matching in time
are dropped.

### Matcher configuration

- `remote_ip`, `local_ip`: `{"ranges": ["10.0.0.0/8", "192.168.1.1"]}`.
- `not`: a list of matcher sets, e.g. `[{"remote_ip": {"ranges": ["127.0.0.1"]}}]`;
  it matches when none of the sets match.
- `clock`: `{"after": "08:00:00", "before": "17:00:00", "timezone": "Europe/Berlin"}`.
  `before` of `00:00:00` means end of day, the points are swapped if
  `before` is earlier, and `timezone` may be an IANA name, a fixed offset
  such as `+02` or `-03:30`, `Local`, or empty for UTC.
- `dns`: `{"allow": [...], "deny": [...], "default_deny": false, "prefer_allow": false}`.
  Each rule may hold `class`, `class_regexp`, `type`, `type_regexp`, `name`
  and `name_regexp` (names are fully qualified, e.g. `example.com.`). Over
  TCP the message must carry its two-byte length prefix and nothing after
  it. Matched messages are stored in the connection variable `dns_messages`.

## Using it as a library

```python
from l4router.app import App

app = App.from_config({
    "servers": {
        "dns-filter": {
            "listen": ["udp/127.0.0.1:5353"],
            "routes": [
                {
                    "match": [{"dns": {"deny": [{"name": "example.com."}]}}],
                    "handle": [{"handler": "echo"}],
                }
            ],
        }
    }
})
app.provision()
app.start()
try:
    ...
finally:
    app.stop()
```

Routes can also be driven directly against a single connection, which is
handy in tests or when embedding the router in another server:

```python
import logging

from l4router.connection import SocketConn, wrap_connection
from l4router.handlers import HandlerFunc
from l4router.routes import Route, RouteList

logger = logging.getLogger("example")
routes = RouteList([Route(matcher_sets_raw=[{"local_ip": {"ranges": ["127.0.0.1"]}}])])
routes.provision()
handler = routes.compile(logger, 3.0, HandlerFunc(lambda cx: None))
handler.handle(wrap_connection(SocketConn(sock), b"", logger))
```

`ListenerWrapper` (in `l4router.listener`) turns a route list into a
listener of its own: `wrap_listener(sock)` returns a `Layer4Listener` whose
connections are matched first, and those that reach the end of the routes
are returned by `Layer4Listener.accept()`. It handles stream sockets only.

`l4router.regexmatch.MatchRegexp` is a helper for writing matchers: it
matches text against a pattern and stores the captures on a `Replacer` as
`l4.regexp.<index>` and `l4.regexp.<group name>` (also under
`l4.regexp.<name>.` when given a `name`).

## Writing your own matchers and handlers

Matchers implement `ConnMatcher.match(cx)` and return `True` or `False`.
They read from the connection with `cx.read(size)` or look at
`cx.matching_bytes()`; when the prefetched bytes are not enough to decide,
raise `ConsumedAllPrefetchedBytes` and the router fetches more.

Handlers implement `NextHandler.handle(cx, next_handler)` and call
`next_handler.handle(cx)` to pass the connection on.

Register a factory, which receives the module's configuration, under the
`layer4.matchers.` or `layer4.handlers.` namespace so that configurations
can refer to it by name. After building, `load_module` calls `provision()`
and `validate()` on the module if it has them.

```python
from l4router.registry import register_module

register_module("layer4.handlers.my_handler", lambda config: MyHandler())
```

Values can be shared between matchers and handlers with
`cx.set_var(key, value)` / `cx.get_var(key)`; variables are also visible to
placeholders as `{l4.vars.<key>}` through the connection's `Replacer`.

## What it does not do

l4router only ships the matchers and handlers listed above. It has no
handler that proxies connections to an upstream, no TLS termination or TLS
and HTTP matchers, and no configuration format other than JSON.