"""Connection matchers and the sets that combine them."""

from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Iterable, Mapping, Union

from l4router.connection import Connection, Replacer
from l4router.registry import ModuleError, load_module, register_module

MATCHERS_NAMESPACE = "layer4.matchers"

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class ConnMatcher(ABC):
    """Decides whether a connection matches.

    A matcher should read as little as possible from the connection: only
    as much as it needs to decide.
    """

    module_id: ClassVar[str] = "unknown"

    @abstractmethod
    def match(self, cx: Connection) -> bool:
        """Return True if `cx` matches; raise if matching cannot proceed."""


def _log_match(cx: Connection, matcher: Any, matched: bool, error: BaseException | None) -> None:
    if not cx.logger.isEnabledFor(logging.DEBUG):
        return
    cx.logger.debug(
        "matching remote=%s error=%s matcher=%s matched=%s",
        cx.remote_addr,
        error,
        getattr(matcher, "module_id", "unknown"),
        matched,
    )


class MatcherSet(list):
    """Matchers that must all match for the set to match."""

    def match(self, cx: Connection) -> bool:
        """Return True if every matcher matches, or if the set is empty.

        Each matcher sees the recorded bytes from the same starting point.
        Any error stops matching and is raised.
        """
        for matcher in self:
            matched = False
            error: BaseException | None = None
            cx.freeze()
            try:
                matched = bool(matcher.match(cx))
            except Exception as exc:
                error = exc
                raise
            finally:
                cx.unfreeze()
                _log_match(cx, matcher, matched, error)
            if not matched:
                return False
        return True


class MatcherSets(list):
    """Matcher sets of which at least one must match."""

    def any_match(self, cx: Connection) -> bool:
        """Return True if any set matches, or if there are no sets at all."""
        for matcher_set in self:
            if matcher_set.match(cx):
                return True
        return len(self) == 0

    @classmethod
    def from_config(cls, raw_sets: Iterable[Mapping[str, Any]] | None) -> MatcherSets:
        """Load matcher modules from a list of `{name: config}` mappings."""
        sets = cls()
        for raw_set in raw_sets or []:
            if not isinstance(raw_set, Mapping):
                raise ModuleError(f"matcher set must be an object, got {raw_set!r}")
            matcher_set = MatcherSet()
            for name, config in raw_set.items():
                matcher = load_module(f"{MATCHERS_NAMESPACE}.{name}", config)
                if not callable(getattr(matcher, "match", None)):
                    raise ModuleError(f"decoded module is not a ConnMatcher: {matcher!r}")
                matcher_set.append(matcher)
            sets.append(matcher_set)
        return sets


def parse_cidr(expression: str) -> IPNetwork:
    """Parse an IP address or CIDR range into a network."""
    try:
        if "/" in expression:
            return ipaddress.ip_network(expression, strict=False)
        return ipaddress.ip_network(ipaddress.ip_address(expression))
    except ValueError as exc:
        raise ValueError(f"invalid IP address or CIDR range '{expression}': {exc}") from exc


def _host_of(addr: Any) -> str:
    if addr is None:
        return ""
    if isinstance(addr, tuple):
        return str(addr[0]) if addr else ""
    text = str(addr)
    if text.startswith("["):
        end = text.find("]")
        if end != -1 and text[end + 1:end + 2] == ":":
            return text[1:end]
        return text
    host, sep, _port = text.rpartition(":")
    if sep and ":" not in host:
        return host
    # no port, or a bare IPv6 address
    return text


def _parse_ip(addr: Any, side: str) -> IPAddress:
    host = _host_of(addr)
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"getting {side} IP: invalid {side} IP address: {host}") from None


def _parse_ranges(ranges: Iterable[str]) -> list[IPNetwork]:
    repl = Replacer()
    return [parse_cidr(repl.replace_all(r, "")) for r in ranges]


def _ip_in(addr: Any, side: str, networks: Iterable[IPNetwork]) -> bool:
    ip = _parse_ip(addr, side)
    return any(ip in network for network in networks)


@dataclass
class MatchRemoteIP(ConnMatcher):
    """Matches connections by remote IP address or CIDR range."""

    ranges: list[str] = field(default_factory=list)
    _networks: list[IPNetwork] = field(default_factory=list, init=False, repr=False, compare=False)

    module_id: ClassVar[str] = "layer4.matchers.remote_ip"

    def provision(self) -> None:
        """Parse the IP ranges, expanding placeholders first."""
        self._networks = _parse_ranges(self.ranges)

    def match(self, cx: Connection) -> bool:
        """Return True if the remote address lies in one of the ranges."""
        return _ip_in(cx.remote_addr, "remote", self._networks)


@dataclass
class MatchLocalIP(ConnMatcher):
    """Matches connections by local IP address or CIDR range."""

    ranges: list[str] = field(default_factory=list)
    _networks: list[IPNetwork] = field(default_factory=list, init=False, repr=False, compare=False)

    module_id: ClassVar[str] = "layer4.matchers.local_ip"

    def provision(self) -> None:
        """Parse the IP ranges, expanding placeholders first."""
        self._networks = _parse_ranges(self.ranges)

    def match(self, cx: Connection) -> bool:
        """Return True if the local address lies in one of the ranges."""
        return _ip_in(cx.local_addr, "local", self._networks)


@dataclass
class MatchNot(ConnMatcher):
    """Negates its matcher sets: false if any set matches.

    Sets are OR'ed; matchers within a set are AND'ed. The configuration is
    a list of `{matcher_name: config}` objects.
    """

    matcher_sets_raw: list[dict[str, Any]] = field(default_factory=list)
    matcher_sets: list[MatcherSet] = field(default_factory=list)

    module_id: ClassVar[str] = "layer4.matchers.not"

    def provision(self) -> None:
        """Load the matcher modules to be negated."""
        try:
            loaded = MatcherSets.from_config(self.matcher_sets_raw)
        except ModuleError as exc:
            raise ModuleError(f"loading matcher sets: {exc}") from exc
        self.matcher_sets.extend(loaded)

    def match(self, cx: Connection) -> bool:
        for matcher_set in self.matcher_sets:
            if matcher_set.match(cx):
                return False
        return True


def _ip_factory(cls: Callable[..., ConnMatcher]) -> Callable[[Any], ConnMatcher]:
    def factory(config: Any) -> ConnMatcher:
        config = config or {}
        if not isinstance(config, Mapping):
            raise TypeError(f"expected an object, got {type(config).__name__}")
        ranges = config.get("ranges", [])
        if not isinstance(ranges, list) or not all(isinstance(r, str) for r in ranges):
            raise TypeError("'ranges' must be a list of strings")
        return cls(ranges=list(ranges))

    return factory


def _not_factory(config: Any) -> MatchNot:
    config = config or []
    if not isinstance(config, list):
        raise TypeError(f"expected a list of matcher sets, got {type(config).__name__}")
    return MatchNot(matcher_sets_raw=list(config))


register_module(MatchRemoteIP.module_id, _ip_factory(MatchRemoteIP))
register_module(MatchLocalIP.module_id, _ip_factory(MatchLocalIP))
register_module(MatchNot.module_id, _not_factory)