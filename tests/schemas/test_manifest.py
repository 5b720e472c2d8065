"""
Unit tests for formula parsing and manifest validation.
"""

import pytest

from cellar.errors import ManifestError
from cellar.schemas.manifest import (
    CopyIntoPrefix,
    Manifest,
    WriteExecutableWrapper,
    load_manifest,
)

HASH = "c07c2c84acaa752e36e180e6534f2cd9cfb30bd6298009ef6156a04adc19845b"


def formula(**overrides):
    data = {
        "name": "pomodoromac",
        "desc": "Basic pomodoro for macOS",
        "homepage": "https://github.com/0x3m1r/PomodoroMac",
        "url": "https://github.com/0x3m1r/PomodoroMac/pomodoro_for_mac.tar.gz",
        "sha256": HASH,
        "version": "0.1",
        "install": [
            {"copy": "pomodoro_for_mac.app"},
            {"wrapper": "pomodoro_for_mac.app/Contents/MacOS/pomodoro_for_mac"},
        ],
    }
    data.update(overrides)
    return data


def test_from_dict_parses_formula_keys():
    manifest = Manifest.from_dict(formula())

    assert manifest.name == "pomodoromac"
    assert manifest.description == "Basic pomodoro for macOS"
    assert manifest.version == "0.1"
    assert manifest.content_hash == HASH
    assert manifest.install_actions == [
        CopyIntoPrefix("pomodoro_for_mac.app"),
        WriteExecutableWrapper("pomodoro_for_mac.app/Contents/MacOS/pomodoro_for_mac"),
    ]
    assert manifest.archive_basename == "pomodoro_for_mac.tar.gz"


def test_wrapper_defaults_to_package_name():
    manifest = Manifest.from_dict(formula())
    action = manifest.wrapper_actions[0]
    assert manifest.wrapper_name_for(action) == "pomodoromac"


def test_explicit_wrapper_name():
    manifest = Manifest.from_dict(formula(install=[
        {"copy": "tool"},
        {"wrapper": {"target": "tool/bin/tool", "name": "tool-cli"}},
    ]))
    assert manifest.wrapper_name_for(manifest.wrapper_actions[0]) == "tool-cli"


def test_hash_is_normalized_to_lowercase():
    manifest = Manifest.from_dict(formula(sha256=HASH.upper()))
    assert manifest.content_hash == HASH


def test_numeric_version_from_yaml_becomes_string():
    manifest = Manifest.from_dict(formula(version=0.1))
    assert manifest.version == "0.1"


@pytest.mark.parametrize("overrides", [
    {"name": None},
    {"name": "../evil"},
    {"version": None},
    {"version": "1.0/../../x"},
    {"url": ""},
    {"sha256": "abc123"},
    {"sha256": "z" * 64},
    {"install": []},
    {"install": "copy everything"},
])
def test_invalid_formulas_are_rejected(overrides):
    with pytest.raises(ManifestError) as exc:
        Manifest.from_dict(formula(**overrides))
    assert exc.value.stage == "manifest"


@pytest.mark.parametrize("path", ["/etc/passwd", "../outside", "app/../../outside", ""])
def test_action_paths_must_stay_inside_package(path):
    with pytest.raises(ManifestError):
        CopyIntoPrefix(path)
    with pytest.raises(ManifestError):
        WriteExecutableWrapper(path)


def test_unknown_action_kind():
    with pytest.raises(ManifestError, match="Unknown install action"):
        Manifest.from_dict(formula(install=[{"symlink": "x"}]))


def test_duplicate_wrapper_names_are_rejected():
    with pytest.raises(ManifestError, match="Duplicate wrapper names"):
        Manifest.from_dict(formula(install=[
            {"copy": "app"},
            {"wrapper": "app/one"},
            {"wrapper": "app/two"},
        ]))


def test_load_manifest_from_yaml(tmp_path):
    path = tmp_path / "tool.yaml"
    path.write_text(
        "name: tool\n"
        "url: https://example.test/tool.zip\n"
        f"sha256: {HASH}\n"
        "version: '2.0'\n"
        "install:\n"
        "  - copy: tool\n"
    )
    manifest = load_manifest(path)
    assert manifest.name == "tool"
    assert manifest.version == "2.0"


def test_load_manifest_reports_bad_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("name: [unterminated\n")
    with pytest.raises(ManifestError, match="Invalid YAML"):
        load_manifest(path)


def test_load_manifest_missing_file(tmp_path):
    with pytest.raises(ManifestError, match="not found"):
        load_manifest(tmp_path / "missing.yaml")
