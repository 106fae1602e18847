"""
Unit tests for environment merging.
"""
from stackctl.MANAGERS.environment_manager import EnvironmentManager
from stackctl.MODELS.service_spec import ServiceSpec


def test_precedence(tmp_path):
    (tmp_path / "base.env").write_text("A=file\nB=file\n# comment\nQUOTED=\"with spaces\"\n")
    (tmp_path / "override.env").write_text("B=override\n")
    spec = ServiceSpec(
        name="app", image="img",
        env_files=["base.env", "override.env"],
        environment={"C": "explicit", "DB_HOST": "pinned"},
    )
    manager = EnvironmentManager(str(tmp_path), inherit={"A": "host", "PATH": "/bin"})

    env = manager.get_merged_environment(spec, {"DB_HOST": "127.0.0.1", "DB_PORT": "5432"})

    assert env == {
        "PATH": "/bin",
        "A": "file",
        "B": "override",
        "QUOTED": "with spaces",
        "DB_HOST": "pinned",
        "DB_PORT": "5432",
        "C": "explicit",
    }


def test_missing_env_file_is_skipped(tmp_path, caplog):
    spec = ServiceSpec(name="app", image="img", env_files=["nope.env"])
    env = EnvironmentManager(str(tmp_path), inherit={}).get_merged_environment(spec)
    assert env == {}
    assert "nope.env" in caplog.text


def test_inherits_process_environment(monkeypatch):
    monkeypatch.setenv("STACKCTL_TEST_VAR", "1")
    env = EnvironmentManager().get_merged_environment(ServiceSpec(name="app", image="img"))
    assert env["STACKCTL_TEST_VAR"] == "1"
