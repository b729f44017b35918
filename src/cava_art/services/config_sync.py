"""Rewrite cava's color keys in place, atomically.

The config file is treated as a template owned by the user: only the
recognized color-slot keys change, every other byte passes through, and the
synchronizer never adds keys that are not already present.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path
from typing import Literal

from .palette_extractor import Color, Palette

logger = logging.getLogger(__name__)

SlotOrder = Literal["dominance", "brightness"]
SLOT_ORDERS: tuple[SlotOrder, ...] = ("dominance", "brightness")
DEFAULT_SECTION = "color"
DEFAULT_COLOR_SLOTS = (
    "background",
    "foreground",
    "gradient_color_1",
    "gradient_color_2",
    "gradient_color_3",
    "gradient_color_4",
)

_SECTION_RE = re.compile(r"^[ \t]*\[(?P<name>[^\]]+)\][ \t]*(?:[;#].*)?$")
# Inline comments need whitespace before them: unquoted `#rrggbb` is a value.
_KEY_RE = re.compile(
    r"^(?P<lead>[ \t]*(?P<key>[A-Za-z0-9_.-]+)[ \t]*=[ \t]*)"
    r"(?P<value>'[^']*'|\"[^\"]*\"|.*?)"
    r"(?P<trail>[ \t]*(?:[ \t][;#].*)?)$"
)
_LINE_END_RE = re.compile(r"(\r\n|\n|\r)$")


class SyncError(Exception):
    """Config file could not be synchronized."""


class MissingConfigError(SyncError):
    """Config path does not exist."""


class UnwritableConfigError(SyncError):
    """Config file could not be read or replaced."""


class MalformedKeyError(SyncError):
    """Required color keys are absent from the template."""

    def __init__(self, path: Path, missing: Sequence[str]) -> None:
        self.path = path
        self.missing = tuple(missing)
        super().__init__(f"{path}: missing color keys: {', '.join(self.missing)}")


class ConfigSynchronizer:
    """Maps palette entries onto a fixed, ordered list of config keys."""

    def __init__(
        self,
        slots: Sequence[str] = DEFAULT_COLOR_SLOTS,
        *,
        section: str | None = DEFAULT_SECTION,
        order: SlotOrder = "dominance",
    ) -> None:
        if not slots:
            raise ValueError("at least one color slot is required")
        if len(set(slots)) != len(slots):
            raise ValueError("color slots must be unique")
        if order not in SLOT_ORDERS:
            raise ValueError(f"unknown slot order: {order}")
        self._slots = tuple(slots)
        self._section = section.strip().lower() if section else None
        self._order = order

    @property
    def slots(self) -> tuple[str, ...]:
        return self._slots

    @property
    def palette_size(self) -> int:
        return len(self._slots)

    def sync(self, palette: Palette, config_path: Path) -> bool:
        """Write the palette into the file; return False when nothing changed."""
        target = _resolve(config_path)
        original = _read_config(target)
        updated = self.render(original, palette, path=target)
        if updated == original:
            logger.debug("Config %s already matches palette", target)
            return False
        atomic_write_text(target, updated)
        logger.info(
            "Wrote palette to %s",
            target,
            extra={"colors": palette.hex_codes()},
        )
        return True

    def validate(self, config_path: Path) -> None:
        """Check the template is readable and holds every slot key."""
        target = _resolve(config_path)
        text = _read_config(target)
        present = self._present_keys(text)
        missing = [slot for slot in self._slots if slot not in present]
        if missing:
            raise MalformedKeyError(target, missing)

    def render(self, text: str, palette: Palette, *, path: Path | None = None) -> str:
        """Return `text` with the slot keys set to the palette colors."""
        if len(palette) != len(self._slots):
            raise ValueError(
                f"palette has {len(palette)} colors, expected {len(self._slots)}"
            )
        assignments = dict(zip(self._slots, self._ordered(palette)))
        seen: set[str] = set()
        out: list[str] = []
        current_section: str | None = None
        for raw in text.splitlines(keepends=True):
            body, ending = _split_ending(raw)
            section_match = _SECTION_RE.match(body)
            if section_match:
                current_section = section_match.group("name").strip().lower()
                out.append(raw)
                continue
            key_match = _KEY_RE.match(body)
            if (
                key_match is None
                or key_match.group("key") not in assignments
                or not self._in_scope(current_section)
            ):
                out.append(raw)
                continue
            key = key_match.group("key")
            seen.add(key)
            value = _format_value(assignments[key], key_match.group("value"))
            lead, trail = key_match.group("lead"), key_match.group("trail")
            out.append(f"{lead}{value}{trail}{ending}")
        missing = [slot for slot in self._slots if slot not in seen]
        if missing:
            raise MalformedKeyError(path or Path("<config>"), missing)
        return "".join(out)

    def _ordered(self, palette: Palette) -> list[Color]:
        if self._order == "brightness":
            return sorted(palette, key=lambda color: (color.brightness, color))
        return list(palette)

    def _in_scope(self, current_section: str | None) -> bool:
        return self._section is None or current_section == self._section

    def _present_keys(self, text: str) -> set[str]:
        found: set[str] = set()
        current_section: str | None = None
        for raw in text.splitlines():
            section_match = _SECTION_RE.match(raw)
            if section_match:
                current_section = section_match.group("name").strip().lower()
                continue
            key_match = _KEY_RE.match(raw)
            if key_match and self._in_scope(current_section):
                found.add(key_match.group("key"))
        return found


def atomic_write_text(path: Path, text: str) -> None:
    """Replace `path` via a same-directory temp file and rename."""
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as exc:
        raise UnwritableConfigError(
            f"cannot create temp file for {path}: {exc}"
        ) from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException as exc:
        with suppress(OSError):
            tmp_path.unlink()
        if isinstance(exc, OSError):
            raise UnwritableConfigError(f"cannot write {path}: {exc}") from exc
        raise


def _resolve(config_path: Path) -> Path:
    # Dotfile managers often symlink the config; write through to the real file.
    return Path(config_path).expanduser().resolve()


def _read_config(path: Path) -> str:
    if not path.exists():
        raise MissingConfigError(f"config file not found: {path}")
    if not path.is_file():
        raise MissingConfigError(f"config path is not a file: {path}")
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            return handle.read()
    except UnicodeDecodeError as exc:
        raise SyncError(f"{path} is not UTF-8 text: {exc}") from exc
    except OSError as exc:
        raise UnwritableConfigError(f"cannot read {path}: {exc}") from exc


def _split_ending(line: str) -> tuple[str, str]:
    match = _LINE_END_RE.search(line)
    if match is None:
        return line, ""
    return line[: match.start()], match.group(1)


def _format_value(color: Color, previous: str) -> str:
    quote = "'"
    if len(previous) >= 2 and previous[0] == previous[-1] and previous[0] in "'\"":
        quote = previous[0]
    return f"{quote}{color.hex}{quote}"
