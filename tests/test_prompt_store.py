from __future__ import annotations

import json
import os

import pytest

from deepresearch.services.prompt_store import PromptCatalog, clear_prompt_cache, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("extract_agent.size_note_large", line_count=4000, preview_lines=200)
    assert prompt == (
        "Markdown is large (4000 lines). Only the first 200 lines are shown. "
        "Use grep/read_lines to inspect more."
    )


def test_render_prompt_joins_multi_line_entries():
    prompt = render_prompt("search_agent.structured_prompt", query="q", raw_output="raw")
    assert prompt == "User query: q\n\nRaw search-subagent output:\n\nraw"


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    clear_prompt_cache()
    with pytest.raises(KeyError, match="line_count"):
        render_prompt("extract_agent.size_note")


def test_render_prompt_rejects_non_string_nodes():
    with pytest.raises(TypeError):
        render_prompt("search_agent.complexity")


def test_catalog_reloads_when_file_changes(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"greeting": ["Hello ${name}", "bye"]}), encoding="utf-8")
    catalog = PromptCatalog(path)
    assert catalog.render("greeting", name="Ada") == "Hello Ada\nbye"

    path.write_text(json.dumps({"greeting": "Hi ${name}"}), encoding="utf-8")
    os.utime(path, ns=(path.stat().st_atime_ns, path.stat().st_mtime_ns + 1_000_000))
    assert catalog.render("greeting", name="Ada") == "Hi Ada"


def test_catalog_rejects_non_object_payload(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        PromptCatalog(path).render("anything")
