"""Aggregate Kubernetes audit events into object-scoped trace spans."""

__version__ = "0.1.0"

__all__ = [
    "aggregator",
    "annotationlinker",
    "clustername",
    "consumer",
    "decorator",
    "dump",
    "event",
    "forward",
    "linker",
    "localcache",
    "message",
    "mq",
    "mqlocal",
    "producer",
    "spancache",
    "tracer",
    "webhook",
]