import pytest

from config import config
from main import NewWorksApp, build_parser, parse_setting
from notifier import LogNotifier, WebhookNotifier, create_notifier


def test_create_notifier_prefers_webhook_when_configured(monkeypatch):
    monkeypatch.setattr(config, 'NOTIFY_WEBHOOK_URL', None)
    assert isinstance(create_notifier(), LogNotifier)

    monkeypatch.setattr(config, 'NOTIFY_WEBHOOK_URL', "https://hooks.example.com/new-works")
    notifier = create_notifier()
    assert isinstance(notifier, WebhookNotifier)
    assert notifier.url == "https://hooks.example.com/new-works"


def test_parse_setting_keeps_yaml_types():
    assert parse_setting("auto_check_enabled=true") == {"auto_check_enabled": True}
    assert parse_setting("concurrency=3") == {"concurrency": 3}
    assert parse_setting("filters.exclude_statuses=[viewed, want]") == \
        {"filters": {"exclude_statuses": ["viewed", "want"]}}
    with pytest.raises(ValueError):
        parse_setting("concurrency")


def test_parser_modes():
    args = build_parser().parse_args(["list", "--filter", "unread", "--sort", "release_date_asc", "--page-size", "5"])
    assert (args.mode, args.filter, args.sort, args.page_size) == ("list", "unread", "release_date_asc", 5)

    args = build_parser().parse_args(["set-status", "ABC-001", "want"])
    assert (args.id, args.status) == ("ABC-001", "want")

    with pytest.raises(SystemExit):
        build_parser().parse_args(["set-status", "ABC-001", "loved"])


@pytest.mark.asyncio
async def test_app_registers_seed_subscriptions_once(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'SUBSCRIPTION_SOURCES', [
        {"id": "x7Ab", "name": "Example Actor", "enabled": True},
        {"id": "Qz3k", "name": "Another Actor", "enabled": False},
    ])
    app = NewWorksApp(str(tmp_path / "cli.db"))
    await app.initialize()
    try:
        assert await app.register_seed_subscriptions() == 0
        subs = await app.db.execute('list_subscriptions')
        assert {(s.id, s.enabled) for s in subs} == {("x7Ab", True), ("Qz3k", False)}

        with pytest.raises(ValueError):
            await app.add_subscription("x7Ab", "Again")
        await app.add_subscription("n3w", "New Actor")
        assert len(await app.db.execute('list_subscriptions')) == 3
    finally:
        await app.close()


@pytest.mark.asyncio
async def test_status_prints_stats_and_runtime_settings(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(config, 'SITE_BASE_URL', "https://example.com")
    monkeypatch.setattr(config, 'NOTIFY_WEBHOOK_URL', "https://hooks.example.com/new-works")
    monkeypatch.setattr(config, 'SUBSCRIPTION_SOURCES', [{"id": "x7Ab", "name": "Example Actor", "enabled": True}])
    db_path = str(tmp_path / "status.db")
    app = NewWorksApp(db_path)
    await app.initialize()
    try:
        assert await app.print_status() == 0
    finally:
        await app.close()

    out = capsys.readouterr().out
    assert "Subscriptions: 1 (1 active)" in out
    assert "Site: https://example.com" in out
    assert f"Database: {db_path}" in out
    assert "Seed subscriptions: 1" in out
    assert "Notifications: webhook" in out
