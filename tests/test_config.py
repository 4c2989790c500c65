"""Tests for the sectioned configuration store."""
from __future__ import annotations

from pathlib import Path

import pytest

from mmdeploy import config as config_store
from mmdeploy.errors import ConfigBootstrapped, ConfigError, ConfigNotFound, EmptySection


def test_parse_preserves_section_order_and_skips_comments() -> None:
    text = "# leading\nroot_key = 1\n[b]\nx = 1\n; note\n[a]\ny =  two words \nnot a pair\n"
    document = config_store.parse(text)

    assert document.section_names() == ["b", "a"]
    assert document.get("", "root_key") == "1"
    assert document.get("a", "y") == "two words"
    assert document.section("missing") == {}


def test_parse_rejects_empty_header() -> None:
    with pytest.raises(ConfigError):
        config_store.parse("[]\nkey = value\n")


def test_flatten_later_sections_win() -> None:
    document = config_store.parse("[general]\nweb_root = /a\n[apache]\nweb_root = /b\n")
    assert document.flatten()["web_root"] == "/b"


def test_load_missing_file_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(ConfigNotFound) as excinfo:
        config_store.load(tmp_path / "deploy.ini")
    assert excinfo.value.path == tmp_path / "deploy.ini"


def test_load_or_bootstrap_copies_sibling_example(tmp_path: Path) -> None:
    target = tmp_path / "deploy.ini"
    example = tmp_path / "deploy.ini.example"
    example.write_text("[general]\napp_name = sample\n", encoding="utf-8")

    with pytest.raises(ConfigBootstrapped) as excinfo:
        config_store.load_or_bootstrap(target)

    assert excinfo.value.template == example
    assert target.read_text(encoding="utf-8") == example.read_text(encoding="utf-8")
    # Second call loads the bootstrapped copy instead of bootstrapping again.
    assert config_store.load_or_bootstrap(target).get("general", "app_name") == "sample"


def test_load_or_bootstrap_falls_back_to_bundled_example(tmp_path: Path) -> None:
    target = tmp_path / "domains.ini"
    with pytest.raises(ConfigBootstrapped) as excinfo:
        config_store.load_or_bootstrap(target)
    assert excinfo.value.template == config_store.BUILTIN_EXAMPLES_DIR / "domains.ini.example"
    assert target.is_file()


def test_require_section_raises_for_empty_section() -> None:
    document = config_store.parse("[general]\n[apache]\nkey = v\n")
    with pytest.raises(EmptySection):
        config_store.require_section(document, "general")
    assert config_store.require_section(document, "apache") == {"key": "v"}


def test_append_and_remove_section_keep_other_content(tmp_path: Path) -> None:
    path = tmp_path / "domains.ini"
    path.write_text("# registry\n[one.example]\ndomain = one.example\n", encoding="utf-8")

    config_store.append_section(
        path,
        "two.example",
        {"domain": "two.example", "enable_ssl": "false"},
        comments={"enable_ssl": "SSL settings"},
    )
    text = path.read_text(encoding="utf-8")
    assert "# registry" in text
    assert "[two.example]\ndomain = two.example\n\n# SSL settings\nenable_ssl = false\n" in text

    assert config_store.remove_section(path, "one.example") is True
    remaining = config_store.load(path)
    assert remaining.section_names() == ["two.example"]
    assert config_store.remove_section(path, "absent") is False


def test_set_values_replaces_within_section_and_appends_missing(tmp_path: Path) -> None:
    path = tmp_path / "deploy.ini"
    path.write_text(
        "[general]\napp_name = old\n# keep me\n\n[apache]\napp_name = untouched\n",
        encoding="utf-8",
    )

    config_store.set_values(path, {"app_name": "new", "web_root": "/srv"}, section="general")

    document = config_store.load(path)
    assert document.get("general", "app_name") == "new"
    assert document.get("general", "web_root") == "/srv"
    assert document.get("apache", "app_name") == "untouched"
    assert "# keep me" in path.read_text(encoding="utf-8")


def test_locate_config_file_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    env = {config_store.CONFIG_ENV_VAR: str(tmp_path / "env.ini")}

    assert config_store.locate_config_file("cli.ini", env) == Path("cli.ini")
    assert config_store.locate_config_file(None, env) == tmp_path / "env.ini"
    assert config_store.locate_config_file(None, {}) == tmp_path / "deploy.ini"


def test_env_overrides_apply_single_keys(tmp_path: Path) -> None:
    path = tmp_path / "deploy.ini"
    path.write_text("[ssl]\nenable_ssl = true\n", encoding="utf-8")
    env = {
        "MMDEPLOY_SSL__ENABLE_SSL": "false",
        "MMDEPLOY_GENERAL__WEB_ROOT": "/srv/www",
        "MMDEPLOY_CONFIG_FILE": "ignored",
        "MMDEPLOY_MALFORMED": "x",
    }

    global_config = config_store.load_global_config(path, env=env)

    assert global_config.get("enable_ssl") == "false"
    assert global_config.document.get("general", "web_root") == "/srv/www"
    assert global_config.get("malformed") is None


def test_global_config_paths_resolve_relative_to_file(tmp_path: Path) -> None:
    path = tmp_path / "conf" / "deploy.ini"
    path.parent.mkdir()
    path.write_text(
        "[general]\nmulti_domain_enabled = TRUE\ndomains_file = registry.ini\n",
        encoding="utf-8",
    )
    global_config = config_store.load_global_config(path, env={})

    assert global_config.multi_domain_enabled is True
    assert global_config.domains_file == tmp_path / "conf" / "registry.ini"
    assert global_config.config_template is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), (" TRUE ", True), ("yes", False), ("1", False), (None, False)],
)
def test_as_bool_only_accepts_true_literal(raw: str | None, expected: bool) -> None:
    assert config_store.as_bool(raw) is expected


def test_typed_helpers() -> None:
    assert config_store.as_list(" a, ,b ,") == ("a", "b")
    assert config_store.as_int("", "days", default=7) == 7
    assert config_store.as_mode("0600", "mode", default=0o644) == 0o600
    with pytest.raises(ConfigError):
        config_store.as_int("ten", "days")
    with pytest.raises(ConfigError):
        config_store.as_mode("999", "mode", default=0o644)
