"""Render config file content from typed dotfile specs.

Rendering is pure: it takes parameters (and, for merge formats, the current
file content) and returns text. Nothing here touches the filesystem, so file
generation is tested separately from system mutation.
"""
import configparser
import io
import json
import re
from typing import Any, Optional

from .schema import ResourceSpec

DOTFILE_FORMATS = ("text", "json", "ini", "keyvalue", "lines")

_KEY_LINE = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*=")


def _value(value: Any) -> str:
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value)


def render_json(content: Any) -> str:
    return json.dumps(content, indent=2) + "\n"


def render_ini(content: dict[str, dict[str, Any]]) -> str:
    """Render ``{section: {key: value}}`` as an INI file.

    Keys keep their case and are written as ``key=value``.
    """
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment]
    for section, values in content.items():
        parser[section] = {k: _value(v) for k, v in (values or {}).items()}

    buf = io.StringIO()
    parser.write(buf, space_around_delimiters=False)
    return buf.getvalue().rstrip("\n") + "\n"


def render_keyvalue(settings: dict[str, Any], existing: Optional[str] = None) -> str:
    """Set ``key=value`` pairs, preserving every other line of ``existing``.

    Existing keys are rewritten in place; missing keys are appended.
    Mirrors editing dnf.conf without clobbering it.
    """
    lines = existing.splitlines() if existing else []
    remaining = dict(settings)

    out = []
    for line in lines:
        match = _KEY_LINE.match(line)
        if match and match.group(1) in remaining:
            key = match.group(1)
            out.append(f"{key}={_value(remaining.pop(key))}")
        else:
            out.append(line)

    for key, value in remaining.items():
        out.append(f"{key}={_value(value)}")

    return "\n".join(out) + "\n"


def render_lines(wanted: list[str], existing: Optional[str] = None) -> str:
    """Ensure each wanted line is present, appending the missing ones."""
    lines = existing.splitlines() if existing else []
    present = {line.strip() for line in lines}
    for line in wanted:
        if line.strip() not in present:
            lines.append(line)
            present.add(line.strip())
    return "\n".join(lines) + "\n"


def render_text(content: str) -> str:
    return content if content.endswith("\n") else content + "\n"


def render_fstab_entry(
    device: str,
    mount_point: str,
    fstype: str,
    options: str = "defaults",
    dump: int = 0,
    passno: int = 0,
) -> str:
    return f"{device} {mount_point} {fstype} {options or 'defaults'} {dump} {passno}"


def render_dotfile(
    spec: ResourceSpec,
    existing: Optional[str] = None,
    fetched: Optional[str] = None,
) -> str:
    """Render the full desired content of a dotfile spec.

    Args:
        spec: A ``dotfile`` resource
        existing: Current file content (merge formats only)
        fetched: Downloaded body when the spec uses ``source_url``

    Raises:
        ValueError: Unknown format or missing content
    """
    fmt = spec.param("format", "text")

    if spec.param("source_url"):
        if fetched is None:
            raise ValueError(f"{spec.ref}: source_url content not fetched")
        return fetched

    if fmt == "json":
        return render_json(spec.param("content", {}))
    if fmt == "ini":
        return render_ini(spec.param("content", {}))
    if fmt == "keyvalue":
        base = existing if spec.param("merge", True) else None
        return render_keyvalue(spec.param("settings", {}), base)
    if fmt == "lines":
        base = existing if spec.param("merge", True) else None
        return render_lines(list(spec.param("lines", [])), base)
    if fmt == "text":
        content = spec.param("content")
        if content is None:
            raise ValueError(f"{spec.ref}: text dotfile needs 'content'")
        return render_text(str(content))

    raise ValueError(f"{spec.ref}: unknown dotfile format '{fmt}'")
