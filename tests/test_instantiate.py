import json

import pytest

from stepflow.errors import InstantiationError
from stepflow.instantiate import (
    Patch,
    PatchMode,
    apply_patch,
    instantiate,
    load_patches,
    manifest_name,
    render_template,
)


TEMPLATE = """\
{
  "meta_info": {"output_dir": "{{ output_dir }}"},
  "greet": {
    "Execution Order": "1",
    "Program Name": "echo",
    "0": "hello {{ sample }}"
  }
}
"""


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def test_manifest_name_strips_template_suffixes():
    assert manifest_name("flows/scrna.json.j2") == "scrna"
    assert manifest_name("scrna.jinja2") == "scrna"
    assert manifest_name("scrna.json") == "scrna"
    assert manifest_name("scrna") == "scrna"


def test_render_template(tmp_path):
    path = write(tmp_path / "wf.json.j2", TEMPLATE)

    doc = render_template(path, {"output_dir": "out", "sample": "pbmc"})

    assert doc["greet"]["0"] == "hello pbmc"
    assert doc["meta_info"]["output_dir"] == "out"


def test_undefined_variable_is_an_error(tmp_path):
    path = write(tmp_path / "wf.json.j2", TEMPLATE)

    with pytest.raises(InstantiationError) as exc_info:
        render_template(path, {"output_dir": "out"})
    assert "sample" in str(exc_info.value)


def test_template_includes_from_search_path(tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    write(shared / "step.j2", '{"Execution Order": "1", "Program Name": "echo", "0": "{{ word }}"}')
    path = write(tmp_path / "wf.j2", '{"only": {% include "step.j2" %}}')

    doc = render_template(path, {"word": "hi"}, search_paths=[shared])

    assert doc == {"only": {"Execution Order": "1", "Program Name": "echo", "0": "hi"}}


def test_template_must_expand_to_an_object(tmp_path):
    path = write(tmp_path / "wf.j2", "[1, 2]")

    with pytest.raises(InstantiationError):
        render_template(path, {})


def test_load_patches(tmp_path):
    path = write(tmp_path / "patches.csv", "name;sample;greet/0\nA;a1;\nB;b1;bye\n")

    a, b = load_patches(path, PatchMode.TEMPLATE)

    assert (a.name, a.values) == ("A", {"sample": "a1"})
    assert (b.name, b.values) == ("B", {"sample": "b1", "greet/0": "bye"})


@pytest.mark.parametrize(
    "text",
    [
        "",
        "sample;other\nA;x\n",
        "name\nA\n",
        "name;sample\n",
        "name;sample\nA;x;extra\n",
        "name;sample\nA;x\nA;y\n",
    ],
)
def test_malformed_patch_files(tmp_path, text):
    path = write(tmp_path / "patches.csv", text)

    with pytest.raises(InstantiationError):
        load_patches(path, PatchMode.MANIFEST)


def test_pre_patches_become_template_variables(tmp_path):
    path = write(tmp_path / "wf.json.j2", TEMPLATE)
    patches = [
        Patch("A", {"sample": "a1"}, PatchMode.TEMPLATE),
        Patch("B", {"sample": "b1"}, PatchMode.TEMPLATE),
    ]

    instances = instantiate(template=path, variables={"output_dir": "out"}, patches=patches)

    assert [i.name for i in instances] == ["wf_A", "wf_B"]
    assert [i.manifest["greet"]["0"] for i in instances] == ["hello a1", "hello b1"]


def test_post_patches_replace_values(tmp_path):
    path = write(tmp_path / "wf.json", json.dumps({
        "greet": {"Execution Order": "1", "Program Name": "echo", "0": "hi"},
    }))
    patch = Patch("loud", {"/greet/0": "HI"}, PatchMode.MANIFEST)

    (instance,) = instantiate(manifest=path, patches=[patch])

    assert instance.name == "wf_loud"
    assert instance.manifest["greet"]["0"] == "HI"
    assert instance.patch is patch


def test_post_patch_needs_existing_parent():
    with pytest.raises(InstantiationError):
        apply_patch({"greet": {"0": "hi"}}, Patch("x", {"missing/0": "y"}, PatchMode.MANIFEST))


def test_post_patch_does_not_touch_the_original():
    doc = {"greet": {"0": "hi"}}
    apply_patch(doc, Patch("x", {"greet/0": "bye"}, PatchMode.MANIFEST))

    assert doc == {"greet": {"0": "hi"}}


def test_pre_patch_on_a_manifest_is_an_error(tmp_path):
    path = write(tmp_path / "wf.json", "{}")

    with pytest.raises(InstantiationError):
        instantiate(manifest=path, patches=[Patch("x", {"a": "b"}, PatchMode.TEMPLATE)])


def test_exactly_one_source(tmp_path):
    with pytest.raises(InstantiationError):
        instantiate()
