from __future__ import annotations

from pathlib import Path

import pytest

from absetzbar.project_paths import ProjectPaths, find_project_root


def test_detect_defaults_to_data_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ABSETZBAR_DATA_DIR", "ABSETZBAR_RULES_DIR", "ABSETZBAR_CONFIG", "ABSETZBAR_DB"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n", encoding="utf-8")
    nested = tmp_path / "src" / "pkg"
    nested.mkdir(parents=True)

    paths = ProjectPaths.detect(nested)

    root = tmp_path.resolve()
    assert paths.root == root
    assert paths.rules_dir == root / "data" / "rules"
    assert paths.config_path == root / "data" / "config.yml"
    assert paths.db_path == root / "data" / "absetzbar.db"


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    monkeypatch.setenv("ABSETZBAR_DATA_DIR", "var")
    monkeypatch.setenv("ABSETZBAR_CONFIG", "/etc/absetzbar/config.yml")
    monkeypatch.delenv("ABSETZBAR_RULES_DIR", raising=False)
    monkeypatch.delenv("ABSETZBAR_DB", raising=False)

    paths = ProjectPaths.detect(tmp_path)

    root = tmp_path.resolve()
    assert paths.data_dir == root / "var"
    assert paths.db_path == root / "var" / "absetzbar.db"
    assert paths.config_path == Path("/etc/absetzbar/config.yml")


def test_missing_project_root(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        find_project_root(tmp_path / "nowhere")
