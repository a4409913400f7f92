"""CLI commands against a file-backed store and the fake server."""

import asyncio
from datetime import datetime, timezone

import pytest
from typer.testing import CliRunner

import cli
from momentsync.container import build_services

from conftest import make_settings

runner = CliRunner()


@pytest.fixture
def make_services(tmp_path, fake_server, sleeps, monkeypatch):
    settings = make_settings(database_url=f"sqlite:///{tmp_path}/cli.db")

    def _build():
        return build_services(settings, transport=fake_server.transport(), sleep=sleeps)

    monkeypatch.setattr(cli, "_build_services", _build)
    return _build


def _stored(make_services):
    services = make_services()
    try:
        return services.repository.list_moments(include_archived=True)
    finally:
        asyncio.run(services.aclose())


def test_log_offline_saves_locally(make_services, fake_server):
    result = runner.invoke(cli.app, ["log", "Drank water", "--offline"])

    assert result.exit_code == 0, result.output
    assert "Saved" in result.output
    assert fake_server.requests == []
    [moment] = _stored(make_services)
    assert moment.text == "Drank water"
    assert moment.server_id is None


def test_log_online_shows_praise(make_services, fake_server):
    result = runner.invoke(cli.app, ["log", "Ran 5k", "--ago", "600"])

    assert result.exit_code == 0, result.output
    assert "Great job: Ran 5k" in result.output
    [moment] = _stored(make_services)
    assert moment.time_ago_seconds == 600
    assert len(fake_server.by_client_id(moment.client_id)) == 1


def test_log_rejects_blank_text(make_services):
    result = runner.invoke(cli.app, ["log", "  "])
    assert result.exit_code == 1


def test_list_view_and_favorite(make_services):
    runner.invoke(cli.app, ["log", "Made tea", "--offline"])
    [moment] = _stored(make_services)
    prefix = moment.client_id[:8]

    listed = runner.invoke(cli.app, ["list"])
    assert listed.exit_code == 0
    assert "Made tea" in listed.output

    viewed = runner.invoke(cli.app, ["view", prefix])
    assert viewed.exit_code == 0
    assert moment.client_id in viewed.output

    favorited = runner.invoke(cli.app, ["favorite", prefix])
    assert favorited.exit_code == 0
    assert "favorited" in favorited.output
    [moment] = _stored(make_services)
    assert moment.is_favorite is True


def test_unknown_id_exits_nonzero(make_services):
    result = runner.invoke(cli.app, ["view", "zzzz"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_delete_restore_and_purge(make_services):
    runner.invoke(cli.app, ["log", "Temp", "--offline"])
    [moment] = _stored(make_services)
    prefix = moment.client_id[:8]

    assert runner.invoke(cli.app, ["delete", prefix]).exit_code == 0
    assert "No moments" in runner.invoke(cli.app, ["list"]).output
    assert runner.invoke(cli.app, ["restore", prefix]).exit_code == 0
    assert "Temp" in runner.invoke(cli.app, ["list"]).output

    runner.invoke(cli.app, ["delete", prefix])
    purged = runner.invoke(cli.app, ["purge", "--days=-1"])
    assert "Purged 1" in purged.output
    assert _stored(make_services) == []


def test_sync_uploads_pending(make_services, fake_server):
    runner.invoke(cli.app, ["log", "One", "--offline"])
    runner.invoke(cli.app, ["log", "Two", "--offline"])

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 0, result.output
    assert fake_server.count("create") == 2
    assert all(m.enriched_praise for m in _stored(make_services))


def test_sync_pull(make_services, fake_server):
    fake_server.seed("from phone", datetime(2025, 3, 1, tzinfo=timezone.utc), praise="Nice one")

    result = runner.invoke(cli.app, ["sync", "--pull"])

    assert result.exit_code == 0, result.output
    assert "Pulled 1" in result.output
    assert [m.text for m in _stored(make_services)] == ["from phone"]


def test_retry_after_failure(make_services, fake_server):
    runner.invoke(cli.app, ["log", "Flaky", "--offline"])
    [moment] = _stored(make_services)
    fake_server.fail("create", 400, "VALIDATION_ERROR")
    runner.invoke(cli.app, ["sync"])
    assert _stored(make_services)[0].sync_error_terminal is True
    viewed = runner.invoke(cli.app, ["view", moment.client_id[:8]])
    assert "VALIDATION_ERROR" in viewed.output
    assert "Attempts : 1" in viewed.output

    result = runner.invoke(cli.app, ["retry", moment.client_id[:8]])

    assert result.exit_code == 0, result.output
    assert _stored(make_services)[0].server_id is not None


def test_status(make_services):
    runner.invoke(cli.app, ["log", "Queued", "--offline"])

    result = runner.invoke(cli.app, ["status"])

    assert result.exit_code == 0, result.output
    assert "Pending sync" in result.output
    assert "unreachable" not in result.output
