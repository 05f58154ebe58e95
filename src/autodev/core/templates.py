"""Prompt templates: loading, rendering and context-file inlining."""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from autodev.db.models import Attachment, Ticket
from autodev.errors import TemplateNotFoundError

logger = logging.getLogger(__name__)

BUNDLED_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

TEMPLATE_FILES = {
    "prd": "prd.md",
    "simple_plan": "simple-plan.md",
    "analysis": "analysis.md",
    "bug_fix": "bug-fix.md",
    "test": "test-gen.md",
    "direct": "direct-execute.md",
    "refactor": "refactor.md",
}

SKIP_DIRS = {
    "node_modules",
    ".git",
    ".worktrees",
    "dist",
    "build",
    "out",
    ".next",
    "__pycache__",
    "target",
    ".gradle",
}

MAX_CONTEXT_FILE_BYTES = 100 * 1024

FAILURE_OUTPUT_LIMIT = 8000

NOT_CONFIGURED = "(not configured)"


@dataclass
class TemplateContext:
    ticket_title: str
    ticket_description: str
    project_name: str
    auto_detected_stack: str
    test_command: str | None = None
    build_command: str | None = None
    context_files: str | None = None
    attachment_descriptions: str | None = None


class TemplateEngine:
    """Renders category templates, preferring user copies over bundled ones."""

    def __init__(self, templates_dir: str | Path | None = None):
        self.templates_dir = Path(templates_dir) if templates_dir else None

    def template_path(self, category: str) -> Path:
        filename = TEMPLATE_FILES.get(category)
        if filename is None:
            raise TemplateNotFoundError(f"No template for category {category!r}")
        if self.templates_dir:
            user_path = self.templates_dir / filename
            if user_path.is_file():
                return user_path
        bundled = BUNDLED_TEMPLATES_DIR / filename
        if bundled.is_file():
            return bundled
        raise TemplateNotFoundError(
            f"Template not found for category {category!r}: {filename}"
        )

    def render(self, category: str, context: TemplateContext) -> str:
        path = self.template_path(category)
        logger.debug("Rendering %s with %s", category, path)
        return render_template(path.read_text(), context)


def render_template(template: str, ctx: TemplateContext) -> str:
    """Substitute tokens in ``template``.

    Conditional blocks are resolved first: ``{{#CONTEXT_FILES}}...{{/CONTEXT_FILES}}``
    keeps its inner text only when ``ctx.context_files`` is set, and likewise
    ``{{#ATTACHMENTS}}`` for ``ctx.attachment_descriptions``. Plain tokens are then
    replaced everywhere and the result is stripped.
    """
    result = _render_block(template, "CONTEXT_FILES", bool(ctx.context_files))
    result = _render_block(result, "ATTACHMENTS", bool(ctx.attachment_descriptions))

    substitutions = {
        "{{TICKET_TITLE}}": ctx.ticket_title,
        "{{TICKET_DESCRIPTION}}": ctx.ticket_description,
        "{{PROJECT_NAME}}": ctx.project_name,
        "{{AUTO_DETECTED_STACK}}": ctx.auto_detected_stack,
        "{{TEST_COMMAND}}": ctx.test_command or NOT_CONFIGURED,
        "{{BUILD_COMMAND}}": ctx.build_command or NOT_CONFIGURED,
        "{{CONTEXT_FILES}}": ctx.context_files or "",
        "{{ATTACHMENT_DESCRIPTIONS}}": ctx.attachment_descriptions or "",
    }
    for token, value in substitutions.items():
        result = result.replace(token, value)
    return result.strip()


def _render_block(template: str, tag: str, include: bool) -> str:
    pattern = re.compile(
        re.escape("{{#" + tag + "}}") + r"(.*?)" + re.escape("{{/" + tag + "}}"),
        re.DOTALL,
    )
    if include:
        return pattern.sub(lambda m: m.group(1), template)
    return pattern.sub("", template)


# ── Context files ─────────────────────────────────────────────


def _glob_to_regex(pattern: str) -> re.Pattern:
    """``*`` matches within one path segment, ``**`` across segments."""
    parts = re.split(r"(\*\*|\*)", pattern)
    out = []
    for part in parts:
        if part == "**":
            out.append(".+")
        elif part == "*":
            out.append("[^/]+")
        else:
            out.append(re.escape(part))
    return re.compile("^" + "".join(out) + "$")


def _walk_files(repo: Path) -> list[str]:
    files = []
    for dirpath, dirnames, filenames in os.walk(repo):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            rel = Path(dirpath, name).relative_to(repo)
            files.append(rel.as_posix())
    return files


def resolve_context_files(repo_path: str | Path, patterns: list[str]) -> str:
    """Inline files matching ``patterns`` as fenced code blocks.

    Files over 100 KB, binary files and unreadable files are skipped. Returns an
    empty string when nothing matches.
    """
    if not patterns:
        return ""
    repo = Path(repo_path)
    regexes = [_glob_to_regex(p[2:] if p.startswith("./") else p) for p in patterns]

    blocks = []
    for rel in _walk_files(repo):
        if not any(rx.match(rel) for rx in regexes):
            continue
        full = repo / rel
        try:
            if full.stat().st_size > MAX_CONTEXT_FILE_BYTES:
                continue
            content = full.read_text(errors="replace")
        except OSError as e:
            logger.debug("Skipping unreadable context file %s: %s", full, e)
            continue
        if "\0" in content:
            continue
        ext = full.suffix[1:] or "text"
        blocks.append(f"```{ext}\n// {rel}\n{content}\n```")
    return "\n\n".join(blocks)


def describe_attachments(attachments: list[Attachment]) -> str | None:
    """Bullet list of attachments for the ``{{ATTACHMENT_DESCRIPTIONS}}`` token."""
    if not attachments:
        return None
    lines = []
    for a in attachments:
        kind = f" ({a.mime_type})" if a.mime_type else ""
        lines.append(f"- {a.filename}{kind}: {a.filepath}")
    return "\n".join(lines)


def seed_templates(target_dir: str | Path) -> list[str]:
    """Copy bundled templates into ``target_dir`` without overwriting edits."""
    target = Path(target_dir)
    target.mkdir(parents=True, exist_ok=True)
    copied = []
    for filename in sorted(TEMPLATE_FILES.values()):
        dest = target / filename
        if dest.exists():
            continue
        shutil.copyfile(BUNDLED_TEMPLATES_DIR / filename, dest)
        copied.append(filename)
    return copied


# ── Execution prompts ─────────────────────────────────────────


def build_execution_prompt(
    ticket: Ticket,
    test_command: str | None,
    context_files: str | None = None,
) -> str:
    plan = ticket.plan or "(No plan provided. Implement based on the task description above.)"
    context_section = f"\n## Key Files for Context\n\n{context_files}\n" if context_files else ""
    test_line = (
        f"\n- When you are done, run `{test_command}` and ensure all tests pass. "
        "Fix any failures before finishing."
        if test_command
        else ""
    )
    return (
        "You are implementing the following feature in this codebase.\n\n"
        f"## Task\n{ticket.title}\n\n{ticket.description}\n\n"
        f"## Implementation Plan\n{plan}\n"
        f"{context_section}\n"
        "## Instructions\n"
        "- Follow the existing code style and conventions.\n"
        "- Write or update tests for any new behaviour.\n"
        f"- Commit your changes with clear, descriptive commit messages.{test_line}\n"
    )


def build_fix_prompt(original_prompt: str, failure_output: str, retry: int) -> str:
    """Append captured test failure output to the execution prompt."""
    excerpt = failure_output.encode()[:FAILURE_OUTPUT_LIMIT].decode(errors="ignore")
    return (
        f"{original_prompt}\n---\n\n"
        f"## Test Failure (Retry {retry})\n\n"
        "The tests are still failing. Read the error output below carefully and fix the code:\n\n"
        f"```\n{excerpt}\n```\n\n"
        "Do not change test expectations unless they are clearly wrong. "
        "Fix the implementation to match the tests.\n"
    )
