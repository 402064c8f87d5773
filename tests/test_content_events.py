import unittest

from channelsync import content
from channelsync.errors import MalformedEvent
from channelsync.events import (
    DeleteEvent,
    InsertEvent,
    MessageRecord,
    UpdateEvent,
    parse_feed_event,
    parse_timestamp_ms,
)


def _row(**overrides):
    row = {
        "id": "m1",
        "channel_id": "c1",
        "user_id": "u1",
        "content": "hello",
        "created_at": "2024-05-01T10:00:00Z",
        "is_system_update": False,
    }
    row.update(overrides)
    return row


class TestContentTags(unittest.TestCase):
    def test_parse_attachments(self):
        image = content.parse_content(content.image_content("https://x/a.png", "a.png"))
        self.assertEqual((image.kind, image.url, image.filename), (content.IMAGE, "https://x/a.png", "a.png"))

        doc = content.parse_content("[FILE] https://x/techpack.pdf | techpack.pdf")
        self.assertEqual((doc.kind, doc.filename), (content.FILE, "techpack.pdf"))

        audio = content.parse_content(content.audio_content("https://x/v.webm"))
        self.assertEqual((audio.kind, audio.url), (content.AUDIO, "https://x/v.webm"))

    def test_plain_text(self):
        parsed = content.parse_content("just words")
        self.assertEqual(parsed.kind, content.TEXT)
        self.assertEqual(parsed.text, "just words")

    def test_tombstone_is_idempotent(self):
        once = content.tombstone("hello")
        self.assertEqual(once, "[DELETED] hello")
        self.assertEqual(content.tombstone(once), once)
        self.assertTrue(content.is_tombstone(once))

    def test_previews(self):
        self.assertEqual(content.preview("[IMAGE] https://x/a.png | a.png"), "Photo: a.png")
        self.assertEqual(content.preview("[FILE] https://x/b.pdf | b.pdf"), "Document: b.pdf")
        self.assertEqual(content.preview("[AUDIO] https://x/v.webm"), "Voice note")
        self.assertEqual(content.preview("[DELETED] gone"), "Message deleted")
        long_text = "word " * 100
        short = content.preview(long_text, limit=20)
        self.assertTrue(short.endswith("..."))
        self.assertLessEqual(len(short), 20)


class TestTimestamps(unittest.TestCase):
    def test_iso_and_int(self):
        self.assertEqual(parse_timestamp_ms(1714557600000), 1714557600000)
        self.assertEqual(parse_timestamp_ms("2024-05-01T10:00:00Z"), 1714557600000)
        self.assertEqual(parse_timestamp_ms("2024-05-01T10:00:00+00:00"), 1714557600000)
        self.assertEqual(parse_timestamp_ms("2024-05-01T10:00:00"), 1714557600000)

    def test_garbage_is_malformed(self):
        for value in (None, "", "yesterday", True):
            with self.assertRaises(MalformedEvent):
                parse_timestamp_ms(value)


class TestParseFeedEvent(unittest.TestCase):
    def test_insert(self):
        event = parse_feed_event({"event": "INSERT", "table": "messages", "new": _row()})
        self.assertIsInstance(event, InsertEvent)
        self.assertEqual(event.message.created_at_ms, 1714557600000)
        self.assertEqual(event.channel_id, "c1")

    def test_realtime_shape(self):
        event = parse_feed_event(
            {"type": "UPDATE", "table": "messages", "record": _row(content="edited"), "old_record": _row()}
        )
        self.assertIsInstance(event, UpdateEvent)
        self.assertEqual(event.message.content, "edited")
        self.assertEqual(event.old.content, "hello")

    def test_delete_with_partial_old_row(self):
        event = parse_feed_event({"eventType": "DELETE", "table": "messages", "old": {"id": "m1"}})
        self.assertIsInstance(event, DeleteEvent)
        self.assertEqual(event.message_id, "m1")
        self.assertIsNone(event.channel_id)
        self.assertIsNone(event.old)

    def test_rejects_other_tables_and_bad_rows(self):
        with self.assertRaises(MalformedEvent):
            parse_feed_event({"event": "INSERT", "table": "channels", "new": _row()})
        with self.assertRaises(MalformedEvent):
            parse_feed_event({"event": "INSERT", "table": "messages", "new": {"id": "m1"}})
        with self.assertRaises(MalformedEvent):
            parse_feed_event({"event": "TRUNCATE", "table": "messages"})

    def test_malformed_event_is_a_value_error(self):
        self.assertTrue(issubclass(MalformedEvent, ValueError))

    def test_record_mapping_keeps_client_ref(self):
        record = MessageRecord.from_mapping(_row(client_ref="cr_1", created_at=5))
        self.assertEqual(record.client_ref, "cr_1")
        self.assertEqual(MessageRecord.from_mapping(record.to_mapping()), record)


if __name__ == "__main__":
    unittest.main()
