import asyncio
import io
import json
import os
import tempfile
import unittest

from channelsync.cli import _load_frames, main, simulate
from channelsync.config import SyncConfig, load_config
from channelsync.sqlite_read_state import SQLiteReadMarkerStore

FRAMES = [
    {"t": "channel", "channel_id": "C123", "name": "Order 123", "members": ["userB"]},
    {"t": "remote", "channel_id": "C123", "user_id": "userB", "content": "first"},
    {"t": "remote", "channel_id": "C123", "user_id": "userB", "content": "[AUDIO] https://x/v.webm"},
    {"t": "send", "channel_id": "C123", "content": "noted"},
    {"t": "ledger", "channel_id": "C123"},
]


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestSimulate(unittest.TestCase):
    def test_hidden_page_replay(self):
        buffer = io.StringIO()
        asyncio.run(simulate(FRAMES, buffer, user_id="userA", hidden=True))

        lines = _lines(buffer)
        decisions = [line for line in lines if line["t"] == "decision"]
        self.assertEqual([d["reason"] for d in decisions], ["page_hidden", "page_hidden", "self_authored"])
        self.assertEqual(decisions[0]["title"], "New message in Order 123")
        self.assertEqual(decisions[1]["body"], "Voice note")
        self.assertEqual(decisions[0]["tag"], "C123")

        unread = [line["unread"] for line in lines if line["t"] == "unread"]
        self.assertEqual(unread, [True, False])

        [ledger] = [line for line in lines if line["t"] == "ledger"]
        self.assertEqual(len(ledger["ids"]), 3)
        self.assertIn({"t": "sent", "message_id": ledger["ids"][-1], "channel_id": "C123"}, lines)

    def test_visible_focused_channel(self):
        frames = [
            {"t": "channel", "channel_id": "C1", "members": ["userB"]},
            {"t": "open", "channel_id": "C1"},
            {"t": "remote", "channel_id": "C1", "user_id": "userB", "content": "hi"},
        ]
        buffer = io.StringIO()
        asyncio.run(simulate(frames, buffer, user_id="userA"))

        [decision] = [line for line in _lines(buffer) if line["t"] == "decision"]
        self.assertEqual(decision["reason"], "focused_channel")
        self.assertTrue(decision["mark_read"])
        self.assertNotIn("title", decision)

    def test_resume_blocked_by_upload(self):
        frames = [
            {"t": "upload.begin", "id": "pick"},
            {"t": "resume"},
            {"t": "upload.end", "id": "pick"},
            {"t": "resume"},
        ]
        buffer = io.StringIO()
        asyncio.run(simulate(frames, buffer, user_id="userA"))
        self.assertEqual([line["refreshed"] for line in _lines(buffer)], [False, True])

    def test_unknown_frame_rejected(self):
        with self.assertRaises(ValueError):
            asyncio.run(simulate([{"t": "bogus"}], io.StringIO(), user_id="userA"))


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_main_reads_frames_file_and_config(self):
        frames_path = os.path.join(self.tmpdir.name, "frames.ndjson")
        with open(frames_path, "w", encoding="utf-8") as handle:
            handle.write("\n".join(json.dumps(frame) for frame in FRAMES))
        config_path = os.path.join(self.tmpdir.name, "config.json")
        with open(config_path, "w", encoding="utf-8") as handle:
            json.dump({"notification_icon": "/icon.png", "unknown": 1}, handle)

        buffer = io.StringIO()
        exit_code = main(
            ["--config", config_path, "simulate", "-f", frames_path, "--user", "userA", "--hidden"],
            output=buffer,
        )

        self.assertEqual(exit_code, 0)
        reasons = [line["reason"] for line in _lines(buffer) if line["t"] == "decision"]
        self.assertEqual(reasons[:2], ["page_hidden", "page_hidden"])

    def _write_visible_frames(self) -> str:
        frames_path = os.path.join(self.tmpdir.name, "visible.json")
        with open(frames_path, "w", encoding="utf-8") as handle:
            json.dump(
                [
                    {"t": "channel", "channel_id": "C1", "members": ["userB"]},
                    {"t": "open", "channel_id": "C1"},
                    {"t": "remote", "channel_id": "C1", "user_id": "userB", "content": "hi"},
                ],
                handle,
            )
        return frames_path

    def test_db_flag_persists_read_markers(self):
        db_path = os.path.join(self.tmpdir.name, "state", "markers.db")
        exit_code = main(
            ["simulate", "-f", self._write_visible_frames(), "--user", "userA", "--db", db_path],
            output=io.StringIO(),
        )

        self.assertEqual(exit_code, 0)
        store = SQLiteReadMarkerStore(db_path)
        try:
            self.assertIsNotNone(store.last_read("userA", "C1"))
        finally:
            store.close()

    def test_config_names_read_marker_db(self):
        db_path = os.path.join(self.tmpdir.name, "markers.db")
        config_path = os.path.join(self.tmpdir.name, "config.json")
        with open(config_path, "w", encoding="utf-8") as handle:
            json.dump({"read_marker_db": db_path}, handle)

        main(
            ["--config", config_path, "simulate", "-f", self._write_visible_frames(), "--user", "userA"],
            output=io.StringIO(),
        )

        store = SQLiteReadMarkerStore(db_path)
        try:
            self.assertEqual([channel for channel, _ in store.list_markers("userA")], ["C1"])
        finally:
            store.close()

    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "resume"}]))
        ndjson_buffer = io.StringIO('{"t": "open", "channel_id": "a"}\n{"t": "resume"}\n')

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "resume"}])
        self.assertEqual(len(list(_load_frames(ndjson_buffer))), 2)
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])


class TestConfig(unittest.TestCase):
    def test_from_mapping_coerces_and_ignores_unknown(self):
        config = SyncConfig.from_mapping({"match_window_ms": "2500", "retry_base_delay_s": 1, "bogus": True})
        self.assertEqual(config.match_window_ms, 2500)
        self.assertIsInstance(config.retry_base_delay_s, float)
        self.assertEqual(config.upload_safety_timeout_ms, 60_000)

    def test_missing_file_gives_defaults(self):
        self.assertEqual(load_config(os.path.join(tempfile.gettempdir(), "no-such-channelsync.json")), SyncConfig())
        self.assertEqual(load_config(None), SyncConfig())

    def test_non_object_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.json")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write("[1, 2]")
            with self.assertRaises(ValueError):
                load_config(path)


if __name__ == "__main__":
    unittest.main()
