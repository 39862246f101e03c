from __future__ import annotations

import json

import pytest

from automation_service.browser.session_store import SessionStore, local_storage_init_script
from automation_service.storage.memory import InMemoryTaskStorage


async def test_saved_session_is_restored_into_new_context(
    session_store: SessionStore, browser, site
) -> None:
    site.local_storage = {"token": "abc123"}
    source = await browser.new_context()
    source.cookie_jar.append({"name": "sid", "value": "s1", "domain": "example.com", "path": "/"})
    page = await source.new_page()

    assert await session_store.save_user_data(source, page, "example.com") is True

    target = await browser.new_context()
    assert await session_store.load_stored_user_data(target, "example.com") is True
    assert target.cookie_jar == [
        {"name": "sid", "value": "s1", "domain": "example.com", "path": "/"}
    ]
    assert len(target.init_scripts) == 1
    assert '"token": "abc123"' in target.init_scripts[0]
    assert 'const domain = "example.com";' in target.init_scripts[0]


async def test_restore_without_snapshot_returns_false(session_store: SessionStore, browser) -> None:
    context = await browser.new_context()
    assert await session_store.load_stored_user_data(context, "unknown.example") is False
    assert context.cookie_jar == []
    assert context.init_scripts == []


async def test_saving_again_replaces_previous_snapshot(
    session_store: SessionStore, storage: InMemoryTaskStorage, browser
) -> None:
    context = await browser.new_context()
    page = await context.new_page()
    context.cookie_jar.append({"name": "old", "value": "1", "domain": "example.com", "path": "/"})
    await session_store.save_user_data(context, page, "example.com")

    context.cookie_jar[:] = [{"name": "new", "value": "2", "domain": "example.com", "path": "/"}]
    await session_store.save_user_data(context, page, "example.com")

    snapshot = await storage.load_session("example.com")
    assert snapshot is not None
    assert [cookie["name"] for cookie in snapshot.cookies] == ["new"]


async def test_save_failure_is_reported_not_raised(
    monkeypatch: pytest.MonkeyPatch, storage: InMemoryTaskStorage, browser
) -> None:
    async def broken_save(domain, snapshot) -> None:
        raise ConnectionError("database is down")

    monkeypatch.setattr(storage, "save_session", broken_save)
    context = await browser.new_context()
    page = await context.new_page()
    assert await SessionStore(storage).save_user_data(context, page, "example.com") is False


def test_init_script_embeds_entries_as_json() -> None:
    entries = {"theme": "dark", "quote": 'say "hi"'}
    script = local_storage_init_script(entries, "example.com")
    assert json.dumps(entries) in script
    assert "window.localStorage.setItem" in script


def test_init_script_only_runs_on_stored_domain() -> None:
    script = local_storage_init_script({"auth_token": "secret"}, ".Example.com ")

    assert 'const domain = "example.com";' in script
    assert "window.location.hostname" in script
    guard = script.index('host !== domain && !host.endsWith("." + domain)')
    assert guard < script.index("window.localStorage.setItem")


def test_init_script_seeds_once_without_overwriting() -> None:
    script = local_storage_init_script({"auth_token": "secret"}, "example.com")

    marker_check = script.index("window.sessionStorage.getItem(marker) !== null")
    assert marker_check < script.index("window.localStorage.setItem")
    assert "if (window.localStorage.getItem(key) === null)" in script
