"""Manifest (SKILL.md) parsing helpers: front-matter, derived fields, slugs, hashes."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

import yaml
from loguru import logger

MANIFEST_FILENAMES = ("SKILL.md", "skill.md")

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_DOT_FOLDER_RE = re.compile(r"^\.[\w-]+/")


@dataclass(frozen=True)
class Frontmatter:
    """Recognised front-matter keys. Unknown keys are kept in ``extra``."""

    name: str | None = None
    description: str | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParsedManifest:
    frontmatter: Frontmatter | None
    body: str


def _as_list(value: Any) -> list[str]:
    """Accept ``"a, b"`` or ``[a, b]`` and return trimmed lower-case strings."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else value if isinstance(value, list) else [value]
    return [str(v).strip().lower() for v in items if str(v).strip()]


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def parse_manifest(content: str) -> ParsedManifest:
    """Split YAML front-matter from the markdown body.

    Malformed YAML is treated as "no front-matter" rather than an error,
    since the body is still a usable manifest.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return ParsedManifest(None, content)

    body = content[match.end() :]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.debug("Ignoring malformed front-matter: {}", exc)
        return ParsedManifest(None, body)
    if not isinstance(data, dict):
        return ParsedManifest(None, body)

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    # category/categories at the root win; metadata.* only when the root declares none
    categories = _as_list(data.get("category")) + _as_list(data.get("categories"))
    if not categories:
        categories = _as_list(metadata.get("category")) or _as_list(metadata.get("categories"))

    tags = _as_list(metadata.get("tags")) or _as_list(data.get("tags")) or _as_list(data.get("keywords"))

    name = data.get("name")
    description = data.get("description")
    known = {"name", "description", "category", "categories", "tags", "keywords", "metadata"}
    return ParsedManifest(
        Frontmatter(
            name=str(name).strip() if name else None,
            description=str(description).strip() if description else None,
            categories=_dedupe(categories),
            tags=_dedupe(tags),
            extra={k: v for k, v in data.items() if k not in known},
        ),
        body,
    )


def derive_name(parsed: ParsedManifest, fallback: str) -> str:
    """Front-matter name → first ``# title`` → *fallback* (the repository name)."""
    if parsed.frontmatter and parsed.frontmatter.name:
        return parsed.frontmatter.name
    if match := _TITLE_RE.search(parsed.body):
        return match.group(1).strip()
    return fallback


def _first_paragraph(body: str) -> str | None:
    """First block of text after the first ``# title``, up to a blank line or heading."""
    lines = body.splitlines()
    for i, line in enumerate(lines):
        if _TITLE_RE.match(line):
            rest = lines[i + 1 :]
            break
    else:
        return None

    paragraph: list[str] = []
    for line in rest:
        stripped = line.strip()
        if not stripped:
            if paragraph:
                break
            continue
        if stripped.startswith("#"):
            break
        paragraph.append(stripped)
    return " ".join(paragraph) or None


def derive_description(parsed: ParsedManifest, fallback: str | None, *, max_chars: int = 500) -> str | None:
    """Front-matter description → first paragraph after the title → *fallback*."""
    if parsed.frontmatter and parsed.frontmatter.description:
        return parsed.frontmatter.description
    if paragraph := _first_paragraph(parsed.body):
        return paragraph[:max_chars]
    return fallback


def _slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9-]", "-", value.lower())
    return re.sub(r"-+", "-", value)


def generate_slug(owner: str, name: str, skill_path: str = "", display_name: str | None = None) -> str:
    """URL-friendly slug for a skill.

    >>> generate_slug("remotion-dev", "remotion")
    'remotion-dev-remotion'
    >>> generate_slug("remotion-dev", "skills", "skills/remotion", "Remotion Best Practices")
    'remotion-dev-skills-remotion-best-practices'
    >>> generate_slug("remotion-dev", "skills", "skills/remotion")
    'remotion-dev-skills-skills-remotion'
    """
    slug = f"{owner}-{name}"
    path = skill_path.strip("/")
    if path:
        if display_name:
            slug = f"{slug}-{_slugify(display_name).strip('-')}"
        else:
            slug = f"{slug}-{path.replace('/', '-')}"
    return _slugify(slug)


def normalize_content(content: str) -> str:
    """Whitespace-insensitive form used to detect copied manifests."""
    content = content.replace("\r\n", "\n")
    content = re.sub(r"\n{3,}", "\n\n", content)
    content = re.sub(r"[ \t]+$", "", content, flags=re.MULTILINE)
    content = re.sub(r"^[ \t]+", "", content, flags=re.MULTILINE)
    return content.strip()


def content_hash(content: str) -> str:
    """sha256 hex digest of the normalized manifest."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def is_in_dot_folder(path: str) -> bool:
    """True for paths under a tool-specific dot folder (``.claude/``, ``.cursor/`` ...)."""
    return bool(_DOT_FOLDER_RE.match(path.lstrip("/")))


def manifest_candidates(skill_path: str) -> list[str]:
    """Repository paths to try, in order, for a skill's manifest."""
    path = skill_path.strip("/")
    return [f"{path}/{fn}" if path else fn for fn in MANIFEST_FILENAMES]


def nested_manifest_dirs(tree_paths: list[str], *, limit: int) -> list[str]:
    """Directories (outside dot folders, excluding the root) that hold a manifest file."""
    dirs: list[str] = []
    for path in tree_paths:
        if "/" not in path or is_in_dot_folder(path):
            continue
        directory, filename = path.rsplit("/", 1)
        if filename not in MANIFEST_FILENAMES or directory in dirs:
            continue
        dirs.append(directory)
        if len(dirs) >= limit:
            break
    return dirs
