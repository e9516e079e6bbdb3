"""
tests/test_sync_service.py — Sync Executor, Embed Refresh & Notifier Tests
===========================================================================

The platform client, Discord client and record store are mocked; these
tests pin down which side effects each operation kind produces and how
failures are surfaced to the engine.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from nafflesync.engine.operations import (
    AllowlistPayload,
    SyncKind,
    TaskStatusPayload,
    UserProgressPayload,
)
from nafflesync.errors import ErrorKind, PlatformError
from nafflesync.services.embed_updates import EmbedRefresher
from nafflesync.services.monitor import AlertRecord, AlertSeverity
from nafflesync.services.notifications import Notifier, pick_announcement_channel
from nafflesync.services.record_store import MessageRef
from nafflesync.services.sync_service import SyncService
from nafflesync.services.throttle import NotificationThrottle


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _not_found() -> discord.NotFound:
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Message")


def _platform():
    platform = MagicMock()
    platform.patch_task_status = AsyncMock(return_value={})
    platform.patch_allowlist = AsyncMock(return_value={})
    platform.patch_user_progress = AsyncMock(return_value={})
    platform.get_task = AsyncMock(return_value={"title": "Follow @naffles", "status": "active", "points": 50})
    platform.get_allowlist = AsyncMock(return_value={"title": "Mint Pass", "winnerCount": 10})
    return platform


def _store(refs=()):
    store = MagicMock()
    store.lookup_entity_messages = AsyncMock(return_value=list(refs))
    store.forget_message = AsyncMock(return_value=1)
    store.guilds_for_community = AsyncMock(return_value=[])
    store.all_linked_guilds = AsyncMock(return_value=[])
    return store


def _channel(channel_id, message=None):
    channel = MagicMock()
    channel.id = channel_id
    channel.send = AsyncMock()
    channel.fetch_message = AsyncMock(return_value=message or _message())
    return channel


def _message():
    message = MagicMock()
    message.edit = AsyncMock()
    return message


def _discord_client(channels):
    client = MagicMock()
    client.get_channel = MagicMock(side_effect=lambda cid: channels.get(cid))
    client.fetch_channel = AsyncMock(side_effect=_not_found())
    return client


# ---------------------------------------------------------------------------
# SyncService
# ---------------------------------------------------------------------------
class TestSyncService:
    @pytest.fixture
    def parts(self):
        platform = _platform()
        refresher = MagicMock()
        refresher.refresh = AsyncMock(return_value=1)
        notifier = MagicMock()
        notifier.task_status_changed = AsyncMock(return_value=1)
        notifier.participant_added = AsyncMock(return_value=1)
        notifier.winners_selected = AsyncMock(return_value=1)
        service = SyncService(platform, refresher, notifier)
        return SimpleNamespace(platform=platform, refresher=refresher, notifier=notifier, service=service)

    def test_task_status_patches_refreshes_and_notifies(self, parts):
        payload = TaskStatusPayload("completed", {"source": "webhook"})
        run_async(parts.service.sync_task_status("t1", payload))

        parts.platform.patch_task_status.assert_awaited_once_with("t1", "completed", {"source": "webhook"})
        parts.refresher.refresh.assert_awaited_once_with(
            SyncKind.TASK_STATUS, "t1", {"status": "completed", "source": "webhook"},
        )
        parts.notifier.task_status_changed.assert_awaited_once_with("t1", "completed", {"source": "webhook"})

    def test_progress_only_update_skips_patch_and_notice(self, parts):
        run_async(parts.service.sync_task_status("t1", TaskStatusPayload(None, {"progressData": {"pct": 10}})))
        parts.platform.patch_task_status.assert_not_awaited()
        parts.refresher.refresh.assert_awaited_once()
        parts.notifier.task_status_changed.assert_not_awaited()

    def test_status_notice_can_be_disabled(self, parts):
        parts.service.notify_on_status_change = False
        run_async(parts.service.sync_task_status("t1", TaskStatusPayload("paused")))
        parts.notifier.task_status_changed.assert_not_awaited()

    def test_platform_failure_propagates(self, parts):
        parts.platform.patch_task_status.side_effect = PlatformError("down", kind=ErrorKind.INTERNAL, status=503)
        with pytest.raises(PlatformError):
            run_async(parts.service.sync_task_status("t1", TaskStatusPayload("completed")))
        parts.refresher.refresh.assert_not_awaited()

    def test_notice_failure_is_swallowed(self, parts):
        parts.notifier.task_status_changed.side_effect = RuntimeError("discord down")
        run_async(parts.service.sync_task_status("t1", TaskStatusPayload("completed")))

    @pytest.mark.parametrize(
        "update_type, notice",
        [("participant_added", "participant_added"), ("winner_selected", "winners_selected")],
    )
    def test_allowlist_notices(self, parts, update_type, notice):
        payload = AllowlistPayload(update_type, {"totalParticipants": 3})
        run_async(parts.service.sync_allowlist("a1", payload))
        parts.platform.patch_allowlist.assert_awaited_once_with("a1", update_type, {"totalParticipants": 3})
        getattr(parts.notifier, notice).assert_awaited_once()

    def test_batch_update_has_no_notice(self, parts):
        run_async(parts.service.sync_allowlist("a1", AllowlistPayload("batch_update", {})))
        parts.notifier.participant_added.assert_not_awaited()
        parts.notifier.winners_selected.assert_not_awaited()

    def test_user_progress(self, parts):
        run_async(parts.service.sync_user_progress("u1", UserProgressPayload("points_earned", {"pointsEarned": 5})))
        parts.platform.patch_user_progress.assert_awaited_once_with("u1", "points_earned", {"pointsEarned": 5})
        parts.refresher.refresh.assert_not_awaited()


# ---------------------------------------------------------------------------
# EmbedRefresher
# ---------------------------------------------------------------------------
class TestEmbedRefresher:
    def test_edits_every_indexed_message(self):
        messages = [_message(), _message()]
        channels = {10: _channel(10, messages[0]), 11: _channel(11, messages[1])}
        store = _store([MessageRef(1, 10, 100), MessageRef(1, 11, 101)])
        refresher = EmbedRefresher(_discord_client(channels), store, _platform())

        edited = run_async(refresher.refresh(SyncKind.TASK_STATUS, "t1", {"status": "completed"}))

        assert edited == 2
        embed = messages[0].edit.await_args.kwargs["embed"]
        assert embed.title.endswith("Follow @naffles")
        assert any(f.value == "Completed" for f in embed.fields)

    def test_deleted_message_is_forgotten(self):
        gone = _message()
        gone.edit.side_effect = _not_found()
        channels = {10: _channel(10, gone), 11: _channel(11)}
        store = _store([MessageRef(1, 10, 100), MessageRef(1, 11, 101)])
        refresher = EmbedRefresher(_discord_client(channels), store, _platform())

        assert run_async(refresher.refresh(SyncKind.ALLOWLIST_UPDATE, "a1", {})) == 1
        store.forget_message.assert_awaited_once_with(10, 100)

    def test_missing_channel_is_forgotten(self):
        store = _store([MessageRef(1, 99, 100)])
        refresher = EmbedRefresher(_discord_client({}), store, _platform())
        assert run_async(refresher.refresh(SyncKind.TASK_STATUS, "t1", {})) == 0
        store.forget_message.assert_awaited_once_with(99, 100)

    def test_other_edit_errors_do_not_block_the_rest(self):
        broken = _message()
        broken.edit.side_effect = discord.HTTPException(MagicMock(status=500, reason="err"), "oops")
        channels = {10: _channel(10, broken), 11: _channel(11)}
        store = _store([MessageRef(1, 10, 100), MessageRef(1, 11, 101)])
        refresher = EmbedRefresher(_discord_client(channels), store, _platform())
        assert run_async(refresher.refresh(SyncKind.TASK_STATUS, "t1", {})) == 1
        store.forget_message.assert_not_awaited()

    def test_no_indexed_messages_skips_snapshot(self):
        platform = _platform()
        refresher = EmbedRefresher(_discord_client({}), _store(), platform)
        assert run_async(refresher.refresh(SyncKind.TASK_STATUS, "t1", {})) == 0
        platform.get_task.assert_not_awaited()

    def test_missing_snapshot_is_skipped(self):
        platform = _platform()
        platform.get_task.side_effect = PlatformError("gone", kind=ErrorKind.NOT_FOUND, status=404)
        refresher = EmbedRefresher(_discord_client({}), _store([MessageRef(1, 10, 100)]), platform)
        assert run_async(refresher.refresh(SyncKind.TASK_STATUS, "t1", {})) == 0

    def test_snapshot_outage_propagates(self):
        platform = _platform()
        platform.get_allowlist.side_effect = PlatformError("down", kind=ErrorKind.INTERNAL, status=502)
        refresher = EmbedRefresher(_discord_client({}), _store([MessageRef(1, 10, 100)]), platform)
        with pytest.raises(PlatformError):
            run_async(refresher.refresh(SyncKind.ALLOWLIST_UPDATE, "a1", {}))

    def test_user_progress_has_no_embeds(self):
        store = _store([MessageRef(1, 10, 100)])
        refresher = EmbedRefresher(_discord_client({}), store, _platform())
        assert run_async(refresher.refresh(SyncKind.USER_PROGRESS, "u1", {})) == 0
        store.lookup_entity_messages.assert_not_awaited()


# ---------------------------------------------------------------------------
# Notifier & throttle
# ---------------------------------------------------------------------------
def _member(*, admin=True, bot=False, fails=False):
    member = MagicMock()
    member.bot = bot
    member.guild_permissions = SimpleNamespace(administrator=admin)
    member.send = AsyncMock(side_effect=RuntimeError("DMs closed") if fails else None)
    return member


class TestNotifier:
    def test_task_notice_posted_once_per_channel(self):
        channel = _channel(10)
        store = _store([MessageRef(1, 10, 100), MessageRef(1, 10, 101)])
        notifier = Notifier(_discord_client({10: channel}), store)

        assert run_async(notifier.task_status_changed("t1", "completed", {})) == 1
        channel.send.assert_awaited_once()
        assert "completed" in channel.send.await_args.kwargs["content"]

    def test_settings_change_dms_admins_only(self):
        admin, regular, bot = _member(), _member(admin=False), _member(bot=True)
        guild = SimpleNamespace(members=[admin, regular, bot])
        client = _discord_client({})
        client.get_guild = MagicMock(return_value=guild)
        store = _store()
        store.guilds_for_community = AsyncMock(return_value=[1])

        delivered = run_async(Notifier(client, store).community_settings_changed("c1", {"pointsName": "gems"}))

        assert delivered == 1
        admin.send.assert_awaited_once()
        regular.send.assert_not_awaited()
        bot.send.assert_not_awaited()

    def test_failed_dm_not_counted(self):
        client = _discord_client({})
        client.get_guild = MagicMock(return_value=SimpleNamespace(members=[_member(), _member(fails=True)]))
        store = _store()
        store.all_linked_guilds = AsyncMock(return_value=[1])
        alert = AlertRecord("many_error_cooldowns", AlertSeverity.CRITICAL, "12 ops", 10, 12, 0.0, 300.0)
        assert run_async(Notifier(client, store).critical_alert(alert)) == 1

    def test_maintenance_broadcast(self):
        system = _channel(10)
        guild_a = SimpleNamespace(system_channel=system, text_channels=[])
        guild_b = SimpleNamespace(system_channel=None, text_channels=[])
        client = _discord_client({})
        client.get_guild = MagicMock(side_effect=lambda gid: {1: guild_a, 2: guild_b}.get(gid))
        store = _store()
        store.all_linked_guilds = AsyncMock(return_value=[1, 2, 3])

        posted = run_async(Notifier(client, store).system_maintenance({"message": "Upgrade", "duration": 15}))
        assert posted == 1
        system.send.assert_awaited_once()

    def test_pick_announcement_channel(self):
        random = SimpleNamespace(name="random")
        general = SimpleNamespace(name="General-Chat")
        assert pick_announcement_channel(SimpleNamespace(system_channel=None, text_channels=[random, general])) is general
        assert pick_announcement_channel(SimpleNamespace(system_channel=None, text_channels=[random])) is random
        assert pick_announcement_channel(SimpleNamespace(system_channel=None, text_channels=[])) is None


class TestNotificationThrottle:
    def test_queues_over_the_limit_and_drains(self, clock):
        throttle = NotificationThrottle(max_per_window=2, window=60, clock=clock)
        channel = _channel(10)

        async def _inner():
            sent = [await throttle.send(channel, content=str(i)) for i in range(4)]
            assert sent == [True, True, False, False]
            assert throttle.queued(10) == 2

            assert await throttle.drain_once() == 0
            clock.advance(60)
            assert await throttle.drain_once() == 2
            assert throttle.queued(10) == 0

        run_async(_inner())
        assert [c.kwargs["content"] for c in channel.send.await_args_list] == ["0", "1", "2", "3"]

    def test_channels_are_independent(self, clock):
        throttle = NotificationThrottle(max_per_window=1, clock=clock)
        assert throttle.is_allowed(1)
        assert not throttle.is_allowed(1)
        assert throttle.is_allowed(2)
