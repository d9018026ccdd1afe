from unittest.mock import AsyncMock, patch

import pytest

import main
from retention.models import CleanupResult
from retention.utils import true_utcnow


def empty_result() -> CleanupResult:
    now = true_utcnow()
    return CleanupResult(started_at=now, finished_at=now, repositories=[])


def test_missing_rules_file_exits_with_config_error(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY_HOST", "https://registry.example.com/v2/")
    argv = ["--rules", str(tmp_path / "missing.properties"), "--log-file", str(tmp_path / "c.log")]

    with patch("main.cleanup_registry", new_callable=AsyncMock) as cleanup:
        with pytest.raises(SystemExit) as exc:
            main.run(argv)

    assert exc.value.code == main.EXIT_CONFIG_ERROR
    cleanup.assert_not_called()


def test_missing_registry_host_exits_with_config_error(tmp_path, monkeypatch):
    monkeypatch.delenv("REGISTRY_HOST", raising=False)
    rules_file = tmp_path / "config.properties"
    rules_file.write_text("app=3\n")

    with pytest.raises(SystemExit) as exc:
        main.run(["--rules", str(rules_file), "--log-file", str(tmp_path / "c.log")])

    assert exc.value.code == main.EXIT_CONFIG_ERROR


def test_unsupported_proxy_exits_with_config_error(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY_HOST", "https://registry.example.com")
    monkeypatch.setenv("REGISTRY_PROXY", "ftp://proxy.example.com:21")
    rules_file = tmp_path / "config.properties"
    rules_file.write_text("app=3\n")

    with patch("main.cleanup_registry", new_callable=AsyncMock) as cleanup:
        with pytest.raises(SystemExit) as exc:
            main.run(["--rules", str(rules_file), "--log-file", str(tmp_path / "c.log")])

    assert exc.value.code == main.EXIT_CONFIG_ERROR
    cleanup.assert_not_called()


def test_single_run(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY_HOST", "https://registry.example.com")
    monkeypatch.setenv("INSECURE_REGISTRY", "1")
    rules_file = tmp_path / "config.properties"
    rules_file.write_text("# keep three\napp = 3\nbad = x\n")

    with patch("main.cleanup_registry", new_callable=AsyncMock) as cleanup:
        cleanup.return_value = empty_result()
        main.run(
            ["--rules", str(rules_file), "--dry-run", "--log-file", str(tmp_path / "c.log")]
        )

    rules, config = cleanup.await_args.args
    assert list(rules) == ["app"]
    assert config.insecure_transport is True
    assert cleanup.await_args.kwargs == {"dry_run": True}
    assert (tmp_path / "c.log").exists()
