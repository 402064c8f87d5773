import unittest

from channelsync.actions import ChannelActions
from channelsync.backend import InMemoryChatBackend
from channelsync.capabilities import ADMIN, JUNIOR_MANAGER, SENIOR_MANAGER
from channelsync.errors import AlreadyExists, NotOwner, PermissionDenied


class ChannelActionsTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = InMemoryChatBackend(now_func=lambda: 1_000)
        self.backend.add_channel("c1", ["admin", "u2"], name="Order 42", status="OPEN")

    async def test_junior_is_refused_before_any_write(self):
        actions = ChannelActions("u2", JUNIOR_MANAGER, self.backend)
        with self.assertRaises(PermissionDenied):
            await actions.delete_channel("c1")
        with self.assertRaises(PermissionDenied):
            await actions.add_member("c1", "u3")
        self.assertEqual(self.backend.writes, 0)
        self.assertIsNotNone(self.backend.channel("c1"))

    async def test_duplicate_member_is_reported(self):
        actions = ChannelActions("admin", SENIOR_MANAGER, self.backend)
        with self.assertRaises(AlreadyExists):
            await actions.add_member("c1", "u2")
        await actions.add_member("c1", "u3")
        self.assertIn("u3", await self.backend.list_members("c1"))

    async def test_status_change_posts_system_update(self):
        actions = ChannelActions("admin", ADMIN, self.backend)
        channel = await actions.set_status("c1", "IN_PRODUCTION")
        self.assertEqual(channel["status"], "IN_PRODUCTION")
        [update] = await self.backend.fetch_messages("c1")
        self.assertTrue(update.is_system_update)
        self.assertEqual(update.content, "Status changed to IN_PRODUCTION")

    async def test_unknown_channel_fields_rejected(self):
        actions = ChannelActions("admin", ADMIN, self.backend)
        with self.assertRaises(ValueError):
            await actions.edit_channel("c1", {"owner": "me"})

    async def test_delete_message_tombstones_own_message_only(self):
        mine = await self.backend.send_message("c1", "u2", "typo")
        theirs = await self.backend.send_message("c1", "admin", "hello")
        actions = ChannelActions("u2", JUNIOR_MANAGER, self.backend)

        deleted = await actions.delete_message(mine)
        self.assertEqual(deleted.content, "[DELETED] typo")
        self.assertIs(await actions.delete_message(deleted), deleted)
        with self.assertRaises(NotOwner):
            await actions.delete_message(theirs)
        with self.assertRaises(PermissionDenied):
            await actions.edit_message(deleted, "back")


if __name__ == "__main__":
    unittest.main()
