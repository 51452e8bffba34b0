import pytest

from labtree.core.config import EngineConfig, load_config, model_for_role
from labtree.core.errors import LabConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("LABTREE_MAX_DEPTH", "LABTREE_STEP_DELAY_S", "LABTREE_LOG_LEVEL", "OPENAI_MODEL", "OPENAI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    cfg = load_config()
    assert cfg == EngineConfig()
    assert cfg.max_depth == 15
    assert cfg.step_delay_s == 0.3


def test_file_then_env_then_explicit(tmp_path, monkeypatch):
    p = tmp_path / "labtree.yaml"
    p.write_text("max_depth: 4\nstep_delay_s: 1.5\nmodel: from-file\n", encoding="utf-8")
    monkeypatch.setenv("LABTREE_STEP_DELAY_S", "0.5")

    cfg = load_config(str(p), model="from-cli", max_depth=None)

    assert cfg.max_depth == 4
    assert cfg.step_delay_s == 0.5
    assert cfg.model == "from-cli"


def test_unknown_key_is_rejected(tmp_path):
    p = tmp_path / "labtree.yaml"
    p.write_text("max_dpeth: 4\n", encoding="utf-8")
    with pytest.raises(LabConfigError) as exc:
        load_config(str(p))
    assert exc.value.code == "E_CONFIG_UNKNOWN_KEY"


def test_invalid_values_are_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("LABTREE_MAX_DEPTH", "deep")
    with pytest.raises(LabConfigError) as exc:
        load_config()
    assert exc.value.code == "E_CONFIG_INVALID"
    assert exc.value.path == "max_depth"


def test_missing_file(tmp_path):
    with pytest.raises(LabConfigError) as exc:
        load_config(str(tmp_path / "nope.yaml"))
    assert exc.value.code == "E_CONFIG_NOT_FOUND"


def test_model_for_role(monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL_INITIAL_ANALYSIS", "big-model")
    assert model_for_role("initial-analysis", "small") == "big-model"
    assert model_for_role("expand", "small") == "small"


def test_log_level_is_normalized(monkeypatch):
    monkeypatch.setenv("LABTREE_LOG_LEVEL", "debug")
    assert load_config().log_level == "DEBUG"


def test_unknown_log_level_from_env_is_rejected(monkeypatch):
    monkeypatch.setenv("LABTREE_LOG_LEVEL", "verbose")
    with pytest.raises(LabConfigError) as exc:
        load_config()
    assert exc.value.code == "E_CONFIG_INVALID"
    assert exc.value.path == "log_level"


def test_unknown_log_level_from_file_is_rejected(tmp_path):
    p = tmp_path / "labtree.yaml"
    p.write_text("log_level: verbose\n", encoding="utf-8")
    with pytest.raises(LabConfigError) as exc:
        load_config(str(p))
    assert exc.value.code == "E_CONFIG_INVALID"
    assert exc.value.path == "log_level"


def test_fractional_int_setting_is_rejected(tmp_path):
    p = tmp_path / "labtree.yaml"
    p.write_text("max_depth: 3.7\n", encoding="utf-8")
    with pytest.raises(LabConfigError) as exc:
        load_config(str(p))
    assert exc.value.code == "E_CONFIG_INVALID"
    assert exc.value.path == "max_depth"


def test_whole_float_int_setting_is_accepted(tmp_path):
    p = tmp_path / "labtree.yaml"
    p.write_text("max_depth: 4.0\n", encoding="utf-8")
    assert load_config(str(p)).max_depth == 4
