"""Resolution of the cluster name that an audit request came from."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Resolver(ABC):
    """Maps the address of an audit webhook client to a cluster name."""

    @abstractmethod
    def resolve(self, ip: str) -> str:
        """Return the cluster name for the client at ``ip``."""


class AddressResolver(Resolver):
    """Uses the client address itself as the cluster name."""

    def resolve(self, ip: str) -> str:
        return ip