"""``@``-reference parsing and resolution for agent prompts."""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

import structlog

from marginalia.models.signals import AgentRefs

_VAULT = re.compile(r"@vault(?:\s|$)")
_ARCHITECTURE = re.compile(r"@architecture(?:\s|$)")
_MCP = re.compile(r"@mcp:([\w-]+)")
_DOC = re.compile(r"@((?:[\w.-]+/)*[\w.-]+\.md)")

VAULT_MARKER = ".vault"
ARCHITECTURE_FILES = ("ARCHITECTURE.md", "PRODUCT_FEATURES.md", "README.md")
_INDEXED_SUFFIXES = (".md", ".html", ".htm")

_logger = structlog.get_logger("marginalia.agent.refs")


def parse_refs(texts: Iterable[str]) -> AgentRefs:
    """
    Collect references from free text.

    Recognized forms: ``@vault``, ``@architecture``, ``@mcp:<name>`` and
    ``@path/to/doc.md``. Duplicates are dropped, first occurrence order kept.
    """
    refs = AgentRefs()
    for text in texts:
        if _VAULT.search(text):
            refs.vault = True
        if _ARCHITECTURE.search(text):
            refs.architecture = True
        for name in _MCP.findall(text):
            if name not in refs.mcps:
                refs.mcps.append(name)
        for doc in _DOC.findall(text):
            if doc not in refs.docs:
                refs.docs.append(doc)
    return refs


def find_vault_root(document_path: str) -> Path | None:
    """Nearest ancestor directory of ``document_path`` containing a ``.vault`` marker."""
    path = Path(document_path).expanduser()
    directory = path.parent if path.suffix or path.is_file() else path
    for candidate in (directory, *directory.parents):
        if (candidate / VAULT_MARKER).exists():
            return candidate
    return None


def _first_line(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""
    if path.suffix in (".html", ".htm"):
        match = re.search(r"<title[^>]*>(.*?)</title>", text, re.IGNORECASE | re.DOTALL)
        return match.group(1).strip() if match else ""
    for line in text.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped
    return ""


def vault_index(vault_root: Path) -> list[str]:
    """``relative/path: first line`` for every document under the vault, sorted."""
    entries: list[str] = []
    for path in sorted(vault_root.rglob("*")):
        relative = path.relative_to(vault_root)
        if any(part.startswith(".") or part == "node_modules" for part in relative.parts):
            continue
        if not path.is_file() or path.suffix not in _INDEXED_SUFFIXES:
            continue
        first = _first_line(path)
        entries.append(f"- {relative.as_posix()}: {first}" if first else f"- {relative.as_posix()}")
    return entries


def resolve_refs_context(refs: AgentRefs, document_path: str) -> str:
    """
    Render the referenced material as extra prompt context.

    Document references resolve against the document's directory first and
    the vault root second. Unresolvable references are skipped.
    """
    if refs.is_empty:
        return ""
    vault_root = find_vault_root(document_path)
    base_dir = Path(document_path).expanduser().parent
    sections: list[str] = []

    if refs.vault and vault_root is not None:
        index = "\n".join(vault_index(vault_root))
        sections.append(f"Vault index ({vault_root}):\n{index}")

    if refs.architecture and vault_root is not None:
        for name in ARCHITECTURE_FILES:
            content = _read(vault_root / name)
            if content is not None:
                sections.append(f"Architecture document ({name}):\n```\n{content}\n```")

    for doc in refs.docs:
        candidates = [base_dir / doc]
        if vault_root is not None:
            candidates.append(vault_root / doc)
        for candidate in candidates:
            content = _read(candidate)
            if content is not None:
                sections.append(f"Reference document ({doc}):\n```\n{content}\n```")
                break
        else:
            _logger.info("reference_not_found", doc=doc, document_path=document_path)

    if refs.mcps:
        sections.append("Requested MCP servers: " + ", ".join(refs.mcps))

    return "\n\n".join(sections)


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
