"""Discovery of SKILL.md metadata and its rendering for prompts."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

_FRONT_MATTER_OPEN = "---\n"
_FRONT_MATTER_CLOSE = "\n---\n"


@dataclass
class SkillMeta:
    """Metadata of one discovered skill."""

    name: str
    description: str
    tags: list[str] = field(default_factory=list)
    version: str = ""
    path: str = ""


@dataclass
class DiscoverResult:
    """Discovered skills and the non-fatal problems met on the way."""

    metas: list[SkillMeta] = field(default_factory=list)
    warnings: list[Exception] = field(default_factory=list)


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def _resolve_dir(directory: str) -> str:
    if directory.startswith("~/"):
        directory = os.path.join(str(Path.home()), directory[2:])
    if not os.path.isabs(directory):
        directory = os.path.join(os.getcwd(), directory)
    return os.path.normpath(directory)


def parse_front_matter(content: str) -> tuple[dict[str, str], str]:
    """Split ``key: value`` front matter from a document; returns (fields, body)."""
    trimmed = content.lstrip("\n\r\t ")
    if not trimmed.startswith(_FRONT_MATTER_OPEN):
        return {}, content
    rest = trimmed[len(_FRONT_MATTER_OPEN):]
    end = rest.find(_FRONT_MATTER_CLOSE)
    if end < 0:
        return {}, content
    front, body = rest[:end], rest[end + len(_FRONT_MATTER_CLOSE):]
    fields: dict[str, str] = {}
    for line in front.split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip().lower()] = value.strip().strip("\"'")
    return fields, body


def _first_heading(content: str) -> str:
    for line in content.split("\n"):
        line = line.strip()
        if line.startswith("# "):
            return line[2:].strip()
    return ""


def _first_paragraph(content: str) -> str:
    paragraph: list[str] = []
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            if paragraph:
                break
            continue
        if trimmed.startswith(("#", "```", "- ", "* ")):
            continue
        paragraph.append(trimmed)
        if len(paragraph) >= 2:
            break
    return " ".join(paragraph)


def _parse_tags(raw: str) -> list[str]:
    raw = raw.strip()
    if not raw:
        return []
    raw = raw.removeprefix("[").removesuffix("]")
    tags = (part.strip("\"'").strip() for part in raw.split(","))
    return [tag for tag in tags if tag]


def _first_non_empty(*values: str) -> str:
    return next((value for value in values if value.strip()), "")


def _parse_skill_meta(path: str) -> SkillMeta:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise OSError(f"skills: read {_quote(path)}: {exc}") from exc
    content = _normalize_text(raw)
    if not content:
        raise ValueError(f"skills: empty SKILL.md: {_quote(path)}")
    fields, body = parse_front_matter(content)
    name = _first_non_empty(
        fields.get("name", ""),
        _first_heading(body),
        os.path.basename(os.path.dirname(path)),
    )
    description = _first_non_empty(fields.get("description", ""), _first_paragraph(body))
    if not name or not description:
        raise ValueError(f"skills: invalid skill format {_quote(path)} (name/description is required)")
    return SkillMeta(
        name=name.strip(),
        description=description.strip(),
        tags=_parse_tags(fields.get("tags", "")),
        version=fields.get("version", "").strip(),
        path=path,
    )


def discover_meta(dirs: Iterable[str]) -> DiscoverResult:
    """Scan skill directories for SKILL.md files and collect their metadata."""
    result = DiscoverResult()
    seen: set[str] = set()

    for directory in dirs:
        directory = (directory or "").strip()
        if not directory:
            continue
        try:
            resolved = _resolve_dir(directory)
        except (OSError, RuntimeError) as exc:
            result.warnings.append(OSError(f"skills: resolve {_quote(directory)}: {exc}"))
            continue
        try:
            info = os.stat(resolved)
        except FileNotFoundError:
            continue
        except OSError as exc:
            result.warnings.append(OSError(f"skills: stat {_quote(resolved)}: {exc}"))
            continue
        if not os.path.isdir(resolved) or not Path(resolved).is_dir() or info is None:
            result.warnings.append(NotADirectoryError(f"skills: {_quote(resolved)} is not a directory"))
            continue

        def on_error(exc: OSError) -> None:
            where = exc.filename if exc.filename is not None else resolved
            result.warnings.append(OSError(f"skills: walk {_quote(str(where))}: {exc}"))

        for dirpath, dirnames, filenames in os.walk(resolved, onerror=on_error):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename.upper() != "SKILL.MD":
                    continue
                normalized = os.path.normpath(os.path.join(dirpath, filename))
                if normalized in seen:
                    continue
                try:
                    meta = _parse_skill_meta(normalized)
                except (OSError, ValueError) as exc:
                    result.warnings.append(exc)
                    continue
                seen.add(normalized)
                result.metas.append(meta)

    result.metas.sort(key=lambda meta: meta.path)
    return result


def build_meta_prompt(metas: Iterable[SkillMeta]) -> str:
    """Render skill metadata for injection into the system prompt."""
    lines = [
        f"- name={_quote(m.name)}; description={_quote(m.description)}; "
        f"tags={_quote(','.join(m.tags))}; version={_quote(m.version)}; path={_quote(m.path)}"
        for m in metas
    ]
    if not lines:
        return ""
    return ("Skills Metadata (auto-loaded, all active):\n" + "\n".join(lines)).strip()