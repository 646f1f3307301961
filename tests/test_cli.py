from __future__ import annotations

import json

from typer.testing import CliRunner

from projectsync import cli

runner = CliRunner()


def test_broadcast_rejects_invalid_payload(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "init_logging", lambda **kwargs: tmp_path / "cli.log")
    result = runner.invoke(cli.app, ["broadcast", "TASK_UPDATE", "p1", "--payload", "{nope"])
    assert result.exit_code != 0
    assert "payload is not valid JSON" in result.output


def test_stats_and_health_print_probe_results(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "init_logging", lambda **kwargs: tmp_path / "cli.log")
    calls = []

    def fake_get(url: str, path: str) -> dict:
        calls.append((url, path))
        if path == "/health":
            return {"status": "healthy", "clients": 0}
        return {"totalClients": 0, "totalProjects": 0, "projectStats": {}}

    monkeypatch.setattr(cli, "_get", fake_get)

    stats = runner.invoke(cli.app, ["stats", "--url", "http://relay.test/"])
    assert stats.exit_code == 0
    assert json.loads(stats.output)["totalProjects"] == 0

    health = runner.invoke(cli.app, ["health", "--url", "http://relay.test"])
    assert health.exit_code == 0
    assert '"healthy"' in health.output
    assert calls == [("http://relay.test", "/stats"), ("http://relay.test", "/health")]
