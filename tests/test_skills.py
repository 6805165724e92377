import os

from caelis.skills import SkillMeta, build_meta_prompt, discover_meta, parse_front_matter

SKILL_CONTENT = """---
name: echo_skill
description: Echo helper skill.
tags: [tool, local]
version: v1
---
# Echo Skill

Echo helper skill description.
"""


def _write_skill(root, name, content):
    directory = root / "skills" / name
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "SKILL.md"
    path.write_text(content, encoding="utf-8")
    return path


def test_discover_meta(tmp_path):
    _write_skill(tmp_path, "echo", SKILL_CONTENT)
    result = discover_meta([str(tmp_path / "skills")])
    assert result.warnings == []
    assert len(result.metas) == 1
    meta = result.metas[0]
    assert meta.name == "echo_skill"
    assert meta.description == "Echo helper skill."
    assert meta.tags == ["tool", "local"]
    assert meta.version == "v1"
    assert meta.path == os.path.normpath(str(tmp_path / "skills" / "echo" / "SKILL.md"))


def test_build_meta_prompt():
    text = build_meta_prompt(
        [SkillMeta(name="a", description="desc", tags=["x"], version="v1", path="/tmp/a/SKILL.md")]
    )
    assert "Skills Metadata" in text
    assert 'name="a"' in text
    assert 'tags="x"; version="v1"; path="/tmp/a/SKILL.md"' in text


def test_build_meta_prompt_empty():
    assert build_meta_prompt([]) == ""


def test_discover_meta_invalid_format(tmp_path):
    _write_skill(tmp_path, "bad", "")
    result = discover_meta([str(tmp_path / "skills")])
    assert result.metas == []
    assert len(result.warnings) == 1
    assert "empty SKILL.md" in str(result.warnings[0])


def test_discover_meta_falls_back_to_heading_and_paragraph(tmp_path):
    _write_skill(tmp_path, "plain", "# Plain Skill\n\n- bullet\nFirst line.\nSecond line.\nThird line.\n")
    meta = discover_meta([str(tmp_path / "skills")]).metas[0]
    assert meta.name == "Plain Skill"
    assert meta.description == "First line. Second line."
    assert meta.tags == []


def test_discover_meta_name_from_directory(tmp_path):
    _write_skill(tmp_path, "dirname", "Just a description.")
    meta = discover_meta([str(tmp_path / "skills")]).metas[0]
    assert meta.name == "dirname"
    assert meta.description == "Just a description."


def test_discover_meta_sorted_and_deduplicated(tmp_path):
    _write_skill(tmp_path, "b", SKILL_CONTENT)
    _write_skill(tmp_path, "a", SKILL_CONTENT)
    skills_dir = str(tmp_path / "skills")
    result = discover_meta([skills_dir, skills_dir, "  "])
    paths = [meta.path for meta in result.metas]
    assert len(paths) == 2
    assert paths == sorted(paths)


def test_discover_meta_missing_dir_is_silent(tmp_path):
    result = discover_meta([str(tmp_path / "nowhere")])
    assert result.metas == []
    assert result.warnings == []


def test_discover_meta_file_instead_of_dir_warns(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    result = discover_meta([str(target)])
    assert result.metas == []
    assert len(result.warnings) == 1
    assert "is not a directory" in str(result.warnings[0])


def test_parse_front_matter():
    fields, body = parse_front_matter("---\nName: 'quoted'\n# comment\nnocolon\n---\nbody text")
    assert fields == {"name": "quoted"}
    assert body == "body text"


def test_parse_front_matter_without_block():
    fields, body = parse_front_matter("plain body")
    assert fields == {}
    assert body == "plain body"