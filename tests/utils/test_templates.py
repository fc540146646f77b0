import pytest

from nodefleet.utils.templates import TASK_PREAMBLE, TemplateError, TemplateRenderer, split_script


def test_split_script_tasks():
    script = (
        "# header, ignored\n"
        "#name: first\n"
        "echo one\n"
        "#name: empty\n"
        "\n"
        "#name: second\n"
        "echo two\n"
        "echo three\n"
    )
    tasks = split_script(script)
    assert [t.title for t in tasks] == ["first", "second"]
    assert tasks[0].body == TASK_PREAMBLE + "echo one\n"
    assert tasks[1].body == TASK_PREAMBLE + "echo two\necho three\n"


def test_split_script_without_markers():
    assert split_script("echo orphan\n") == []


def test_renderer_is_strict(tmp_path):
    (tmp_path / "t.sh.j2").write_text("#name: hi {{ who }}\necho {{ who }}\n")
    r = TemplateRenderer(tmp_path)

    assert r.render("t.sh.j2", {"who": "node"}) == "#name: hi node\necho node\n"
    with pytest.raises(Exception):
        r.render("t.sh.j2", {})
    with pytest.raises(TemplateError):
        r.render("missing.j2", {})
