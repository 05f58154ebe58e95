"""Tests for prompt templates and context files."""

from pathlib import Path

import pytest

from autodev.core.templates import (
    FAILURE_OUTPUT_LIMIT,
    TEMPLATE_FILES,
    TemplateContext,
    TemplateEngine,
    build_execution_prompt,
    build_fix_prompt,
    describe_attachments,
    render_template,
    resolve_context_files,
    seed_templates,
)
from autodev.db.models import Attachment, Ticket
from autodev.errors import TemplateNotFoundError


def make_context(**overrides) -> TemplateContext:
    values = dict(
        ticket_title="Add login",
        ticket_description="Users need to sign in",
        project_name="demo",
        auto_detected_stack="Python",
    )
    values.update(overrides)
    return TemplateContext(**values)


class TestRenderTemplate:
    def test_tokens_replaced(self):
        out = render_template(
            "{{PROJECT_NAME}}: {{TICKET_TITLE}} / {{TICKET_DESCRIPTION}} ({{AUTO_DETECTED_STACK}})",
            make_context(),
        )
        assert out == "demo: Add login / Users need to sign in (Python)"

    def test_missing_commands_render_not_configured(self):
        out = render_template("test={{TEST_COMMAND}} build={{BUILD_COMMAND}}", make_context(test_command="pytest"))
        assert out == "test=pytest build=(not configured)"

    def test_conditional_blocks(self):
        template = "A{{#CONTEXT_FILES}}[{{CONTEXT_FILES}}]{{/CONTEXT_FILES}}B{{#ATTACHMENTS}}<{{ATTACHMENT_DESCRIPTIONS}}>{{/ATTACHMENTS}}C"
        assert render_template(template, make_context()) == "ABC"
        rendered = render_template(
            template, make_context(context_files="files", attachment_descriptions="pics")
        )
        assert rendered == "A[files]B<pics>C"

    def test_rendering_is_deterministic(self):
        ctx = make_context(context_files="x", test_command="make test")
        template = Path(TemplateEngine().template_path("prd")).read_text()
        assert render_template(template, ctx) == render_template(template, ctx)

    def test_output_is_trimmed(self):
        assert render_template("\n\n  {{TICKET_TITLE}}  \n", make_context()) == "Add login"


class TestTemplateEngine:
    def test_every_category_has_a_bundled_template(self):
        engine = TemplateEngine()
        for category in TEMPLATE_FILES:
            text = engine.render(category, make_context())
            assert "Add login" in text
            assert "{{" not in text

    def test_user_template_wins(self, tmp_path):
        (tmp_path / "simple-plan.md").write_text("custom {{TICKET_TITLE}}")
        assert TemplateEngine(tmp_path).render("simple_plan", make_context()) == "custom Add login"

    def test_falls_back_to_bundled(self, tmp_path):
        text = TemplateEngine(tmp_path).render("bug_fix", make_context())
        assert "Add login" in text

    def test_unknown_category(self):
        with pytest.raises(TemplateNotFoundError):
            TemplateEngine().render("poetry", make_context())

    def test_seed_templates_does_not_overwrite(self, tmp_path):
        (tmp_path / "prd.md").write_text("mine")
        copied = seed_templates(tmp_path)

        assert "prd.md" not in copied
        assert (tmp_path / "prd.md").read_text() == "mine"
        assert sorted(copied) == sorted(f for f in TEMPLATE_FILES.values() if f != "prd.md")
        assert seed_templates(tmp_path) == []


class TestContextFiles:
    def test_glob_matching(self, tmp_path):
        (tmp_path / "src" / "pkg").mkdir(parents=True)
        (tmp_path / "src" / "pkg" / "core.py").write_text("print('core')")
        (tmp_path / "src" / "top.py").write_text("print('top')")
        (tmp_path / "README.md").write_text("# readme")

        out = resolve_context_files(tmp_path, ["src/*.py"])
        assert "// src/top.py" in out
        assert "core.py" not in out

        out = resolve_context_files(tmp_path, ["src/**/*.py"])
        assert "// src/pkg/core.py" in out
        assert out.startswith("```py\n")

    def test_skips_large_binary_and_vcs_files(self, tmp_path):
        (tmp_path / "big.txt").write_text("x" * (100 * 1024 + 1))
        (tmp_path / "blob.txt").write_bytes(b"abc\0def")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "dep.txt").write_text("dep")
        (tmp_path / "ok.txt").write_text("fine")

        out = resolve_context_files(tmp_path, ["*.txt", "node_modules/*.txt"])
        assert "// ok.txt" in out
        assert "big.txt" not in out
        assert "blob.txt" not in out
        assert "dep.txt" not in out

    def test_no_patterns(self, tmp_path):
        assert resolve_context_files(tmp_path, []) == ""


class TestPrompts:
    def test_describe_attachments(self):
        attachments = [
            Attachment(id="1", ticket_id="t", filename="shot.png", filepath="/a/shot.png", mime_type="image/png"),
            Attachment(id="2", ticket_id="t", filename="notes", filepath="/a/notes"),
        ]
        assert describe_attachments(attachments) == "- shot.png (image/png): /a/shot.png\n- notes: /a/notes"
        assert describe_attachments([]) is None

    def test_execution_prompt(self):
        ticket = Ticket(id="t", project_id="p", title="Add login", description="Sign in", plan="1. Do it")
        prompt = build_execution_prompt(ticket, "pytest -q", "```py\n// a.py\n```")

        assert "## Task\nAdd login" in prompt
        assert "## Implementation Plan\n1. Do it" in prompt
        assert "## Key Files for Context" in prompt
        assert "run `pytest -q`" in prompt

    def test_execution_prompt_without_plan_or_tests(self):
        prompt = build_execution_prompt(Ticket(id="t", project_id="p", title="Quick"), None)
        assert "No plan provided" in prompt
        assert "run `" not in prompt

    def test_fix_prompt_truncates_failure_output(self):
        output = "E" * (FAILURE_OUTPUT_LIMIT + 500)
        prompt = build_fix_prompt("original", output, 2)

        assert prompt.startswith("original\n---")
        assert "## Test Failure (Retry 2)" in prompt
        assert "E" * FAILURE_OUTPUT_LIMIT in prompt
        assert "E" * (FAILURE_OUTPUT_LIMIT + 1) not in prompt
