"""Regular-expression matching that publishes captures as placeholders."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from l4router.connection import REGEXP_REPL_PREFIX, Replacer

_WORD_RE = re.compile(r"\w+", re.ASCII)


@dataclass
class MatchRegexp:
    """A regular expression whose captures are stored on a replacer.

    Unnamed groups are exposed by their index (0 is the whole match),
    named groups also by name. With a `name`, every capture is stored a
    second time under that name as a namespace.
    """

    pattern: str = ""
    name: str = ""
    _compiled: re.Pattern[str] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def provision(self) -> None:
        """Compile the pattern."""
        try:
            self._compiled = re.compile(self.pattern)
        except re.error as exc:
            raise ValueError(f"compiling matcher regexp {self.pattern}: {exc}") from exc

    def validate(self) -> None:
        """Ensure the name, if any, contains word characters."""
        if self.name and not _WORD_RE.search(self.name):
            raise ValueError(
                f"invalid regexp name (must contain only word characters): {self.name}"
            )

    def _store(self, repl: Replacer, suffix: str, value: str) -> None:
        if self.name:
            repl.set(f"{REGEXP_REPL_PREFIX}{self.name}.{suffix}", value)
        repl.set(f"{REGEXP_REPL_PREFIX}{suffix}", value)

    def match(self, text: str, repl: Replacer) -> bool:
        """Return True if `text` matches, storing the captures on `repl`."""
        if self._compiled is None:
            self.provision()
        compiled = self._compiled
        assert compiled is not None
        found = compiled.search(text)
        if found is None:
            return False

        values = [found.group(0), *found.groups(default="")]
        for index, value in enumerate(values):
            self._store(repl, str(index), value)

        for group_name, index in sorted(compiled.groupindex.items(), key=lambda item: item[1]):
            self._store(repl, group_name, values[index])

        return True