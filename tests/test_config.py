import os

import pytest

from gltf_import.config import ImportOptions, load_options

ENV_VARS = [
    "GLTF_IMPORT_QUANTUM_MS", "GLTF_IMPORT_ANIMATIONS", "GLTF_IMPORT_AUTO_SCALE",
    "GLTF_IMPORT_AUTO_SCALE_SIZE", "GLTF_IMPORT_SHOW_MODEL", "GLTF_IMPORT_MAX_WORKERS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    for name in ENV_VARS:
        os.environ.pop(name, None)


def test_defaults_without_env_file(tmp_path):
    assert load_options(tmp_path / "missing.env") == ImportOptions()


def test_env_file_overrides(tmp_path):
    env = tmp_path / ".env"
    env.write_text(
        "GLTF_IMPORT_QUANTUM_MS=4.5\n"
        "GLTF_IMPORT_ANIMATIONS=false\n"
        "GLTF_IMPORT_AUTO_SCALE=yes\n"
        "GLTF_IMPORT_AUTO_SCALE_SIZE=3\n"
        "GLTF_IMPORT_MAX_WORKERS=8\n"
    )
    options = load_options(env)

    assert options.quantum_ms == 4.5
    assert options.import_animations is False
    assert options.auto_scale is True
    assert options.auto_scale_size == 3.0
    assert options.max_workers == 8
    assert options.show_model_after_import is True


def test_process_env_wins_over_file(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text("GLTF_IMPORT_QUANTUM_MS=4.5\n")
    monkeypatch.setenv("GLTF_IMPORT_QUANTUM_MS", "20")
    assert load_options(env).quantum_ms == 20.0


def test_invalid_number_falls_back(tmp_path, monkeypatch):
    monkeypatch.setenv("GLTF_IMPORT_MAX_WORKERS", "lots")
    assert load_options(tmp_path / "missing.env").max_workers == ImportOptions().max_workers
