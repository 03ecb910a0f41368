# kelemetry

Building blocks for turning Kubernetes audit events into traces. Each object
gets pseudo-spans that cover fixed time windows. Requests against the object
are recorded as child spans under them. Audit event lists come in through a
webhook handler. They pass through an in-process message queue, and a consumer
turns them into aggregator events.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Components

- `kelemetry.spancache`: the abstract `Cache` (`fetch_or_reserve`, `fetch`,
  `set_reserved`) and its `Entry`. It provides the clocks `Clock`, `RealClock`
  (UTC) and `FakeClock` (`step` advances it by hand). The conflict errors are
  `AlreadyReservedError`, `InvalidKeyError` and `UidMismatchError`, all
  subclasses of `SpanCacheError`. `should_retry(err)` reports whether an error,
  or any error in its cause chain, is one of those conflicts.
- `kelemetry.localcache`: `LocalCache(clock, trim_frequency)`, an in-memory
  `Cache`. A reservation is given a random 16-byte UID and a new one on every
  `set_reserved`. `trim()` drops expired entries. `start(stop_event)` runs
  `trim` periodically in a daemon thread.
- `kelemetry.tracer`: `Span`, `Log`, `LogType` and the abstract `Tracer`
  (`create_span`, `inject_carrier`, `extract_carrier`).
- `kelemetry.linker`: `ObjectRef` and the abstract `Linker`. `LinkerList`
  returns the first parent found by its registered linkers.
- `kelemetry.event`: `Event`, with the chainable `with_end_time`,
  `with_duration`, `with_tag` and `log`. An event without an end time lasts one
  second (`finish_time()`).
- `kelemetry.aggregator`: `Aggregator(clock, span_cache, linkers, tracer,
  options)` and `AggregatorOptions`. `send(obj, event, sub_object_id)` nests the
  event under a field span, the field span under an object span, and the object
  span under the parent's children span when a linker finds a parent. The
  spans are created lazily through the cache. Events that share a `SubObjectId`
  are grouped together. A second primary is demoted under the first. A
  non-primary that finds no primary before the poll timeout is promoted. The
  constructor raises `ValueError` if `span_follow_ttl` exceeds `span_ttl`.
- `kelemetry.message`: `Message` (`from_json`, `to_json`), `RawMessage`
  (`event_list_json`), the `Verb` values, and `cluster_of`, which decodes only
  the `cluster` field.
- `kelemetry.decorator`: the abstract `Decorator` and `DecoratorList`, which
  applies decorators in the order they were added.
- `kelemetry.mq`: the abstract `Queue` and `Producer`, and
  `DuplicateConsumerError`.
- `kelemetry.mqlocal`: `LocalQueue(partition_by_object)`, which runs one worker
  thread per consumer partition, and its `LocalProducer`. Messages go to a
  random partition. With `partition_by_object` set, a keyed message goes to the
  partition chosen by the `fnv32` (FNV-1) hash of its key. Call `start` before
  sending. It raises `ValueError` if consumer groups differ in partition count.
  `lag(group, partition)` reports how many messages are waiting.
- `kelemetry.producer`: `AuditProducer`, which publishes messages keyed by a
  `PartitionKeyType` (`cluster`, `object` or `audit-id`, the default). See also
  `partition_key`.
- `kelemetry.consumer`: `AuditConsumer`, configured with `ConsumerOptions`.
  It handles completed create, update, patch and delete events and sends them
  to the aggregator. `infer_object_ref` rebuilds a missing object reference
  from the response object through a caller-supplied `resource_lookup`.
- `kelemetry.annotationlinker`: `AnnotationLinker`, which reads a `ParentLink`
  from the `kelemetry.kubewharf.io/parent-link` annotation. The annotation is
  taken from the object's body or from an optional `object_getter`.
- `kelemetry.webhook`: `Webhook`. `handle(body, client_ip, cluster)` decodes a
  posted event list and fans it out. Each raw subscriber gets the whole list;
  each other subscriber gets one message per event. Subscribers receive through
  `Subscription` queues, and `receive_until` drains one until it is closed or
  stopped.
- `kelemetry.clustername`: the abstract `Resolver` and `AddressResolver`, which
  uses the client address as the cluster name.
- `kelemetry.dump`: `AuditDumper`, which appends messages as JSON lines to a
  file created with mode 0600. It can be used as a context manager.
- `kelemetry.forward`: `ForwardProxy`, which POSTs raw event lists to an
  upstream URL. `forward_url` substitutes `:cluster` in the URL.

## Example

```python
from datetime import datetime, timedelta, timezone

from kelemetry.localcache import LocalCache
from kelemetry.spancache import FakeClock
from kelemetry.webhook import Webhook

clock = FakeClock(datetime(2023, 1, 1, tzinfo=timezone.utc))
cache = LocalCache(clock, timedelta(minutes=30))

entry = cache.fetch_or_reserve("foo", timedelta(seconds=10))
cache.set_reserved("foo", b"bar", entry.last_uid, timedelta(seconds=10))
assert cache.fetch("foo").value == b"bar"

webhook = Webhook()
subscription = webhook.add_subscriber("example")
assert webhook.handle(b'{"items": [{"auditID": "a1"}]}', "10.0.0.1") == 1
message = subscription.get(timeout=1)
assert message.cluster == "10.0.0.1" and message.audit_id == "a1"
```

## What this package does not do

- It has no command-line program and no HTTP server. `Webhook.handle` takes a
  request body that the caller has already received.
- It has no tracing backend. `Tracer` must be implemented by the caller to
  export spans anywhere.
- `LocalCache` and `LocalQueue` live in one process. No cache or queue shared
  between processes is provided.
- It does not talk to a Kubernetes cluster. Resource discovery, event filtering
  and fetching object bodies are callables supplied by the caller.