"""Matching connections that carry DNS request messages."""

from __future__ import annotations

import re
import socket
import struct
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Mapping

import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from l4router.connection import Connection, ConsumedAllPrefetchedBytes, Replacer
from l4router.matchers import ConnMatcher
from l4router.registry import register_module

DNS_MESSAGES_VAR_NAME = "dns_messages"

# Bytes needed to parse a DNS message header.
DNS_HEADER_BYTES = 12
DNS_MIN_MSG_SIZE = 512
DNS_MAX_MSG_SIZE = 65535
DNS_SPECIAL_ANY = "*"

# The reserved Z bit of the header flags.
_ZERO_FLAG = 0x0040

_RULE_KEYS = {
    "class": "class_",
    "class_regexp": "class_regexp",
    "name": "name",
    "name_regexp": "name_regexp",
    "type": "type_",
    "type_regexp": "type_regexp",
}


def _replacer(cx: Any) -> Replacer:
    repl = getattr(cx, "replacer", None)
    if repl is None:
        repl = getattr(cx, "repl")
    if callable(repl) and not isinstance(repl, Replacer):
        repl = repl()
    return repl


def _is_stream(cx: Any) -> bool:
    """Tell whether the connection runs over TCP (or another stream transport)."""
    candidates = [cx]
    for attr in ("conn", "_conn", "underlying", "_underlying"):
        inner = getattr(cx, attr, None)
        if inner is not None:
            candidates.append(inner)
    for obj in candidates:
        network = getattr(obj, "network", None)
        if isinstance(network, str) and network:
            return network.startswith("tcp")
        sock = getattr(obj, "sock", None) or getattr(obj, "_sock", None)
        if isinstance(sock, socket.socket):
            return sock.type == socket.SOCK_STREAM
    return False


def _read_exact(cx: Any, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        data = cx.read(remaining)
        if not data:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


def _class_text(value: int) -> str | None:
    text = dns.rdataclass.to_text(value)
    if value == 0 or (text.startswith("CLASS") and text[5:].isdigit()):
        return None
    return text


def _type_text(value: int) -> str | None:
    text = dns.rdatatype.to_text(value)
    if text.startswith("TYPE") and text[4:].isdigit():
        return None
    return text


def _compile(pattern: str) -> re.Pattern[str]:
    expanded = Replacer().replace_all(pattern, "")
    try:
        return re.compile(expanded)
    except re.error as exc:
        raise ValueError(f"compiling regexp {expanded!r}: {exc}") from exc


@dataclass
class MatchDNSRule:
    """Filters for the question section of a DNS request; empty matches anything.

    Exact filters are checked before regular expressions. Classes and types
    are upper case (e.g. IN, A); names are fully qualified (e.g. example.com.).
    """

    class_: str = ""
    class_regexp: str = ""
    name: str = ""
    name_regexp: str = ""
    type_: str = ""
    type_regexp: str = ""
    _class_re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)
    _name_re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)
    _type_re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def provision(self) -> None:
        """Compile the regular expressions, expanding placeholders first."""
        self._class_re = _compile(self.class_regexp)
        self._type_re = _compile(self.type_regexp)
        self._name_re = _compile(self.name_regexp)

    def _patterns(self) -> tuple[re.Pattern[str], re.Pattern[str], re.Pattern[str]]:
        if self._class_re is None or self._type_re is None or self._name_re is None:
            self.provision()
        assert self._class_re and self._type_re and self._name_re
        return self._class_re, self._type_re, self._name_re

    def match(self, repl: Replacer, q_class: str, q_type: str, q_name: str) -> bool:
        """Return True if the question class, type and name pass every filter."""
        class_re, type_re, name_re = self._patterns()
        checks = (
            (self.class_, self.class_regexp, class_re, q_class),
            (self.type_, self.type_regexp, type_re, q_type),
            (self.name, self.name_regexp, name_re, q_name),
        )
        for exact, pattern, compiled, value in checks:
            wanted = repl.replace_all(exact, "")
            if wanted and value != wanted:
                return False
            if pattern and not compiled.search(value):
                return False
        return True


class MatchDNSRules(list):
    """Rules of which any may match; an empty list matches nothing."""

    def provision(self) -> None:
        """Provision every rule."""
        for rule in self:
            rule.provision()

    def match(self, repl: Replacer, q_class: str, q_type: str, q_name: str) -> bool:
        """Return True if any rule matches the question."""
        return any(rule.match(repl, q_class, q_type, q_name) for rule in self)


@dataclass
class MatchDNS(ConnMatcher):
    """Matches connections that carry a single valid DNS request message.

    Over TCP the message carries its two-byte length prefix; over anything
    else it is read whole. `allow` and `deny` rules filter the questions:
    deny wins when both match unless `prefer_allow` is set, and questions
    matched by neither are allowed unless `default_deny` is set.
    """

    allow: MatchDNSRules = field(default_factory=MatchDNSRules)
    deny: MatchDNSRules = field(default_factory=MatchDNSRules)
    default_deny: bool = False
    prefer_allow: bool = False

    module_id: ClassVar[str] = "layer4.matchers.dns"

    def __post_init__(self) -> None:
        if not isinstance(self.allow, MatchDNSRules):
            self.allow = MatchDNSRules(self.allow)
        if not isinstance(self.deny, MatchDNSRules):
            self.deny = MatchDNSRules(self.deny)

    def provision(self) -> None:
        """Prepare the allow and deny rules."""
        self.allow.provision()
        self.deny.provision()

    def _read_message(self, cx: Any) -> bytes | None:
        if _is_stream(cx):
            try:
                (length,) = struct.unpack(">H", _read_exact(cx, 2))
            except EOFError:
                return None
            if length < DNS_HEADER_BYTES or length > DNS_MAX_MSG_SIZE:
                return None
            try:
                wire = _read_exact(cx, length)
            except EOFError:
                return None
            # any byte left over means this is not DNS
            try:
                extra = cx.read(1)
            except (ConsumedAllPrefetchedBytes, EOFError):
                extra = b""
            return None if extra else wire

        try:
            parts = [_read_exact(cx, DNS_HEADER_BYTES)]
        except EOFError:
            return None
        total = DNS_HEADER_BYTES
        while True:
            try:
                chunk = cx.read(DNS_MIN_MSG_SIZE)
            except (ConsumedAllPrefetchedBytes, EOFError, OSError):
                break
            if not chunk:
                break
            parts.append(chunk)
            total += len(chunk)
            if total > DNS_MAX_MSG_SIZE:
                return None
        return b"".join(parts)

    def _allowed(self, repl: Replacer, q_class: str, q_type: str, q_name: str) -> bool:
        no_allow, no_deny = not self.allow, not self.deny
        denied = self.deny.match(repl, q_class, q_type, q_name)
        if no_allow and denied:
            return False
        allowed = self.allow.match(repl, q_class, q_type, q_name)
        if no_deny and not allowed:
            return False
        if denied:
            return allowed and self.prefer_allow
        return allowed or not self.default_deny

    def match(self, cx: Connection) -> bool:
        wire = self._read_message(cx)
        if wire is None:
            return False

        # trailing bytes after the message are rejected by the parser
        try:
            msg = dns.message.from_wire(wire)
        except (dns.exception.DNSException, ValueError):
            return False

        if (
            not msg.question
            or msg.flags & dns.flags.QR
            or msg.rcode() != dns.rcode.NOERROR
            or msg.flags & _ZERO_FLAG
        ):
            return False

        if self.allow or self.deny:
            repl = _replacer(cx)
            for question in msg.question:
                q_class = _class_text(question.rdclass)
                q_type = _type_text(question.rdtype)
                if q_class is None or q_type is None:
                    return False
                if not self._allowed(repl, q_class, q_type, question.name.to_text()):
                    return False

        messages = list(cx.get_var(DNS_MESSAGES_VAR_NAME) or [])
        messages.append(msg)
        cx.set_var(DNS_MESSAGES_VAR_NAME, messages)
        return True


def _rule_from_config(config: Any) -> MatchDNSRule:
    if not isinstance(config, Mapping):
        raise TypeError(f"a DNS rule must be an object, got {type(config).__name__}")
    values = {}
    for key, value in config.items():
        if key not in _RULE_KEYS:
            raise TypeError(f"unknown DNS rule field '{key}'")
        if not isinstance(value, str):
            raise TypeError(f"DNS rule field '{key}' must be a string")
        values[_RULE_KEYS[key]] = value
    return MatchDNSRule(**values)


def _rules_from_config(value: Any, key: str) -> MatchDNSRules:
    if value is None:
        return MatchDNSRules()
    if not isinstance(value, list):
        raise TypeError(f"'{key}' must be a list of rules")
    return MatchDNSRules(_rule_from_config(item) for item in value)


def _flag(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"'{key}' must be a boolean")
    return value


def _dns_factory(config: Any) -> MatchDNS:
    config = config or {}
    if not isinstance(config, Mapping):
        raise TypeError(f"expected an object, got {type(config).__name__}")
    unknown = set(config) - {"allow", "deny", "default_deny", "prefer_allow"}
    if unknown:
        raise TypeError(f"unknown field(s): {', '.join(sorted(unknown))}")
    return MatchDNS(
        allow=_rules_from_config(config.get("allow"), "allow"),
        deny=_rules_from_config(config.get("deny"), "deny"),
        default_deny=_flag(config.get("default_deny", False), "default_deny"),
        prefer_allow=_flag(config.get("prefer_allow", False), "prefer_allow"),
    )


def _rules(items: Iterable[MatchDNSRule]) -> MatchDNSRules:
    return MatchDNSRules(items)


register_module(MatchDNS.module_id, _dns_factory)