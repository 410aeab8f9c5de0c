# lagnotify

lagnotify watches the status of consumer groups. It tells the outside world
when one of them gets into trouble, and it can tell it again when the trouble
is over. Messages are built from Jinja2 templates and sent by notifier
modules:

* `email` (`lagnotify.email_notifier.EmailNotifier`) sends one e-mail per
  group through an SMTP server.
* `http` (`lagnotify.http_notifier.HttpNotifier`) makes one HTTP request per
  group, for example to an alerting webhook.
* `null` (`lagnotify.base.NullNotifier`) sends nothing and only records which
  of its methods were called.

## Installation

```
pip install lagnotify
```

To run the test suite:

```
pip install "lagnotify[test]"
pytest
```

## What it does not do

lagnotify is a library and has no command of its own. It does not store
offsets and it does not evaluate consumer groups. It does not talk to a
coordination service either. The caller supplies all of these to the
`Coordinator` as plain callables:

* `storage(request)` takes a `lagnotify.models.StorageRequest` and returns a
  list of names. For `RequestType.FETCH_CLUSTERS` it returns cluster names.
  For `RequestType.FETCH_CONSUMERS` it returns the consumer group names of
  `request.cluster`.
* `evaluator(request)` takes a `lagnotify.models.EvaluatorRequest` (with
  `cluster` and `group`) and returns a `ConsumerGroupStatus`, or `None` when
  the group is gone.
* `lock_factory(path)` returns an object with `acquire()` and `release()`.
  `acquire()` raises when the lock cannot be taken. Only the instance that
  holds this lock performs evaluations.
* `template_loader(path)` (optional, default
  `lagnotify.templating.load_template`) compiles a template file.

## How the coordinator works

```python
import threading

from lagnotify.config import Config
from lagnotify.coordinator import Coordinator
from lagnotify.models import ConsumerGroupStatus, RequestType, Status

def storage(request):
    if request.request_type is RequestType.FETCH_CLUSTERS:
        return ["local"]
    return ["payments-consumer"]

def evaluator(request):
    return ConsumerGroupStatus(cluster=request.cluster, group=request.group,
                               status=Status.WARNING)

coordinator = Coordinator(config, storage, evaluator,
                          lock_factory=lambda path: threading.Lock())
coordinator.configure()
coordinator.start()
...
coordinator.stop()
```

* `configure()` creates and configures one module for every entry under
  `notifier`. The smallest `interval` among the modules becomes the
  evaluation interval, `min_interval`. With no modules it is 310536000
  seconds.
* `start()` starts every module. If a module fails to start, `start()`
  raises `RuntimeError`. It then starts two background threads:
  * The first refreshes clusters and groups every 60 seconds. This is
    `send_cluster_request`, which calls `process_cluster_list` and
    `process_consumer_list`. Clusters and groups that disappear are
    forgotten. A newly seen group gets a random last-evaluation time within
    the last interval, so that evaluations are spread out.
  * The second runs `manage_eval_loop`. It takes the lock at
    `<zookeeper.root-path>/notifier`, where the root defaults to `/burrow`.
    While it holds the lock, it dispatches evaluations through
    `send_evaluator_requests`.
* Session expiry is signalled from outside:
  1. Set `coordinator.zookeeper_connected = False`.
  2. Call `notify_all()` on `coordinator.zookeeper_expired`, a
     `threading.Condition`.

  Evaluations then stop. Once `zookeeper_connected` is `True` again, the
  lock is released and taken anew.
* `due_evaluations(now)` returns an `EvaluatorRequest` for every group that
  has not been evaluated within `min_interval`, and marks those groups as
  evaluated.
* `handle_response(status)` ignores `None` and `Status.NOT_FOUND`. Every other
  status goes to `check_and_send_response_to_modules`:
  * A status above OK with no open incident opens one, with a random UUID as
    its ID and the current time as its start.
  * Each module is then asked in turn. It is skipped if its allowlist does
    not match the group name or its denylist does. If
    `accept_consumer_group` returns true, `notify_module` is called.
  * An OK status closes the incident afterwards.
* `notify_module` decides whether to send:
  * When an open incident returns to OK and the module has `send-close` set,
    a close notification is always sent.
  * Otherwise the status must be at least the module's `threshold`.
  * With `send-once`, an open notification goes out only once until a close
    notification is sent.
  * Otherwise an open notification is repeated no more often than every
    `send-interval` seconds.

## Configuration

`lagnotify.config.Config` wraps a nested mapping. Keys are addressed with dots
and are case-insensitive. `set` assigns a value and `set_default` assigns a
default. Explicitly set values win over defaults. Values are read with `get`,
`get_str`, `get_int`, `get_bool`, `get_map` (a mapping with string values),
`children` and `is_set`.

```python
from lagnotify.config import Config

password = "password"
config = Config({
    "notifier": {
        "ops-mail": {
            "class-name": "email",
            "group-allowlist": "^payments-.*",
            "threshold": 2,
            "interval": 60,
            "send-close": True,
            "template-open": "templates/open.tmpl",
            "template-close": "templates/close.tmpl",
            "server": "smtp.example.com",
            "port": 587,
            "from": "burrow@example.com",
            "to": "oncall@example.com,team@example.com",
            "auth-type": "plain",
            "username": "user",
            "password": password,
            "extras": {"environment": "production"},
        },
    },
})

config.get_str("notifier.ops-mail.server")   # "smtp.example.com"
config.get_int("notifier.ops-mail.port")     # 587
config.children("notifier")                  # ["ops-mail"]
```

Options that apply to every module under `notifier.<name>`:

| key | default | meaning |
| --- | --- | --- |
| `class-name` | – | `email`, `http` or `null` |
| `interval` | 60 | seconds between evaluations of a group |
| `send-interval` | `interval` | minimum seconds between repeated notifications |
| `threshold` | 2 | lowest status that triggers an open notification |
| `send-once` | false | send the open notification only once per incident |
| `send-close` | false | also send a notification when the incident closes |
| `group-allowlist` | – | regular expression; only matching groups are notified |
| `group-denylist` | – | regular expression; matching groups are never notified |
| `template-open` | – | template file for open notifications |
| `template-close` | – | template file for close notifications (loaded only with `send-close`) |
| `extras` | – | mapping handed to templates as `Extras` |

`lagnotify.config.ConfigurationError` is raised in these cases:

* the old `group-whitelist` or `group-blacklist` keys are present;
* a regular expression is invalid;
* a class name is unknown;
* a template cannot be loaded;
* a module's own settings are invalid.

### E-mail

* `server`, `port`, `from` and `to` are required. `to` may hold several
  addresses separated by commas.
* `auth-type` may be empty, `plain` or `crammd5`; case does not matter. It is
  used with `username` and `password`.
* Port 465 uses implicit TLS. Any other port upgrades with STARTTLS when the
  server offers it.
* `extra-ca` names a PEM file of additional trusted certificates. `noverify`
  turns certificate checks off.

The rendered template must begin with a `Subject: ` line. `Content-Type: `
and `MIME-version: ` lines anywhere in the text become headers. Everything
else is the body. The content type defaults to `text/plain`.
`EmailNotifier.create_message` builds the message and raises `ValueError`
when there is no subject. `send_email` delivers the message. `notify` logs
failures and does not raise them.

### HTTP

* `url-open` is required. `url-close` is also required when `send-close` is
  on.
* Both URLs are templates themselves, so
  `https://alerts.example.com/?id={{ ID }}` works.
* `method-open` and `method-close` default to `POST`. `timeout` defaults to
  5 seconds.
* `username` and `password` add basic authentication. `headers` adds extra
  request headers.
* `extra-ca` and `noverify` work as for e-mail.

The body is sent with `Content-Type: application/json`, and any 2xx answer
counts as success. `HttpNotifier.build_request` returns the
`urllib.request.Request` that would be sent. `notify` sends it and logs
failures.

## Templates

Templates are rendered by `lagnotify.templating.execute_template`. They see
these names:

* `Cluster`, `Group`, `ID`, `Start` and `Extras`;
* `Result`, the full `lagnotify.models.ConsumerGroupStatus`, including its
  `partitions`.

Undefined names are errors. They can call these helpers:

* `jsonencoder`
* `topicsbystatus`
* `partitioncounts`
* `add`, `minus`, `multiply` and `divide`
* `maxlag`
* `formattimestamp`

```python
from datetime import datetime, timezone

from lagnotify.models import ConsumerGroupStatus, Status
from lagnotify.templating import compile_template, execute_template

template = compile_template("{{ ID }} {{ Cluster }} {{ Group }} {{ Result.status }}")
status = ConsumerGroupStatus(cluster="testcluster", group="testgroup", status=Status.OK)
execute_template(template, {"foo": "bar"}, status, "testidstring",
                 datetime.now(timezone.utc))
# "testidstring testcluster testgroup OK"
```

The same helpers can be called directly from `lagnotify.templating`:

* `json_encoder` gives compact JSON.
* `topics_by_status` groups topic names by status name.
* `partition_counts` counts partitions per problem kind: `warn`, `stop`,
  `stall`, `rewind` and `unknown`.
* `divide` truncates toward zero.
* `max_lag` returns 0 for `None`.
* `format_timestamp` formats a millisecond timestamp in local time with
  strftime directives.
* `build_ssl_context` builds the TLS context the notifiers use.

## Using the null notifier in tests

`lagnotify.base.NullNotifier` records calls in these attributes:

* `called_configure`
* `called_start`
* `called_stop`
* `called_accept_consumer_group`
* `called_notify`

This makes it a stand-in for a real notifier when exercising a
`Coordinator`. New kinds of notifier subclass `lagnotify.base.Notifier` and
implement `notify`.