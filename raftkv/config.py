"""Reader for the ``key=value`` configuration files that list cluster nodes."""

from __future__ import annotations

import os


def _trim(text: str) -> str:
    """Remove leading and trailing space characters (only ``' '``)."""
    return text.strip(" ")


class RpcConfig:
    """Key/value settings loaded from one or more configuration files.

    Lines are ``key=value``; blank lines, lines starting with ``#`` and
    lines without ``=`` are ignored.  The first occurrence of a key wins.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def load_config_file(self, path: str | os.PathLike[str]) -> None:
        """Parse ``path`` and add its entries.

        Raises ``FileNotFoundError`` when the file does not exist.
        """
        with open(path, encoding="utf-8", newline="") as stream:
            for line in stream:
                self._parse_line(line)

    def _parse_line(self, line: str) -> None:
        text = _trim(line)
        if not text or text.startswith("#"):
            return
        key, separator, rest = text.partition("=")
        if not separator:
            return
        value = rest.split("\n", 1)[0]
        self._entries.setdefault(_trim(key), _trim(value))

    def load(self, key: str) -> str:
        """Return the value stored for ``key``, or an empty string."""
        return self._entries.get(key, "")