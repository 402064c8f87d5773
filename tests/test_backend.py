import json
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from channelsync.backend import InMemoryChatBackend, RestChatBackend
from channelsync.errors import AlreadyExists, BackendError, PermissionDenied
from channelsync.transport import InMemoryFeedTransport


class FakeRestServer:
    """Just enough of the REST interface for the client calls."""

    def __init__(self) -> None:
        self.requests = []
        self.rows = {}
        self.next_status = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/rest/v1/{table}", self.handle)
        app.router.add_post("/storage/v1/object/{bucket}/{path}", self.upload)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.text()
        self.requests.append(
            {
                "method": request.method,
                "table": request.match_info["table"],
                "query": dict(request.query),
                "body": json.loads(body) if body else None,
                "apikey": request.headers.get("apikey"),
                "auth": request.headers.get("Authorization"),
            }
        )
        if self.next_status is not None:
            status, self.next_status = self.next_status, None
            return web.json_response({"message": "refused"}, status=status)
        if request.method == "POST" and request.match_info["table"] == "messages":
            row = dict(json.loads(body))
            row["id"] = f"srv-{len(self.rows) + 1}"
            row["created_at"] = "2024-05-01T10:00:00Z"
            self.rows[row["id"]] = row
            return web.json_response([row], status=201)
        if request.method == "GET" and request.match_info["table"] == "messages":
            if "id" in request.query:
                wanted = request.query["id"].removeprefix("eq.")
                return web.json_response([self.rows[wanted]] if wanted in self.rows else [])
            channel = request.query["channel_id"].removeprefix("eq.")
            return web.json_response([row for row in self.rows.values() if row["channel_id"] == channel])
        if request.method == "PATCH" and request.match_info["table"] == "messages":
            row = self.rows[request.query["id"].removeprefix("eq.")]
            row.update(json.loads(body))
            return web.json_response([row])
        if request.method == "GET" and request.match_info["table"] == "channel_members":
            return web.json_response([{"user_id": "u1"}, {"user_id": "u2"}])
        if request.method == "PATCH" and request.match_info["table"] == "channels":
            return web.json_response([{"id": request.query["id"].removeprefix("eq."), **json.loads(body)}])
        return web.Response(status=204)

    async def upload(self, request: web.Request) -> web.Response:
        self.requests.append({"method": "UPLOAD", "path": request.match_info["path"], "body": await request.read()})
        return web.json_response({"Key": request.match_info["path"]})


class RestChatBackendTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.fake = FakeRestServer()
        self.server = TestServer(self.fake.app())
        await self.server.start_server()
        base = str(self.server.make_url("/"))
        self.backend = RestChatBackend(base, "anon-key")

    async def asyncTearDown(self):
        await self.backend.close()
        await self.server.close()

    async def test_send_fetch_and_edit(self):
        sent = await self.backend.send_message("c1", "u1", "hello", client_ref="cr_1")
        self.assertEqual(sent.id, "srv-1")
        self.assertEqual(sent.client_ref, "cr_1")
        self.assertEqual(sent.created_at_ms, 1714557600000)

        request = self.fake.requests[0]
        self.assertEqual(request["method"], "POST")
        self.assertEqual(request["body"]["client_ref"], "cr_1")
        self.assertEqual(request["apikey"], "anon-key")
        self.assertEqual(request["auth"], "Bearer anon-key")

        history = await self.backend.fetch_messages("c1")
        self.assertEqual([m.id for m in history], ["srv-1"])
        self.assertEqual(self.fake.requests[-1]["query"]["order"], "created_at.asc")

        edited = await self.backend.edit_message("srv-1", "hello again")
        self.assertEqual(edited.content, "hello again")
        self.assertEqual((await self.backend.get_message("srv-1")).content, "hello again")

    async def test_mark_read_patches_member_row(self):
        await self.backend.mark_read("u1", "c1", 1714557600000)
        request = self.fake.requests[-1]
        self.assertEqual(request["method"], "PATCH")
        self.assertEqual(request["table"], "channel_members")
        self.assertEqual(request["query"], {"channel_id": "eq.c1", "user_id": "eq.u1"})
        self.assertEqual(request["body"], {"last_read_at": "2024-05-01T10:00:00+00:00"})

    async def test_channel_and_member_calls(self):
        self.assertEqual(await self.backend.list_members("c1"), ["u1", "u2"])
        await self.backend.add_member("c1", "u3", "u1")
        await self.backend.remove_member("c1", "u3")
        updated = await self.backend.update_channel("c1", {"status": "SHIPPED"})
        await self.backend.delete_channel("c1")

        self.assertEqual(updated, {"id": "c1", "status": "SHIPPED"})
        methods = [(r["method"], r["table"]) for r in self.fake.requests[1:]]
        self.assertEqual(
            methods,
            [
                ("POST", "channel_members"),
                ("DELETE", "channel_members"),
                ("PATCH", "channels"),
                ("DELETE", "channels"),
            ],
        )

    async def test_status_mapping(self):
        self.fake.next_status = 403
        with self.assertRaises(PermissionDenied) as ctx:
            await self.backend.send_message("c1", "u1", "x")
        self.assertTrue(ctx.exception.authoritative)

        self.fake.next_status = 409
        with self.assertRaises(AlreadyExists):
            await self.backend.add_member("c1", "u2", "u1")

        self.fake.next_status = 500
        with self.assertRaises(BackendError) as ctx:
            await self.backend.delete_channel("c1")
        self.assertEqual(ctx.exception.status, 500)

    async def test_missing_message_is_404(self):
        with self.assertRaises(BackendError) as ctx:
            await self.backend.get_message("nope")
        self.assertEqual(ctx.exception.status, 404)

    async def test_upload_returns_public_url(self):
        url = await self.backend.upload_file("po.pdf", b"%PDF", "application/pdf")
        self.assertIn("/storage/v1/object/public/attachments/", url)
        self.assertTrue(url.endswith("_po.pdf"))
        self.assertEqual(self.fake.requests[-1]["body"], b"%PDF")


class InMemoryChatBackendTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_is_idempotent_per_client_ref(self):
        backend = InMemoryChatBackend(now_func=lambda: 5)
        first = await backend.send_message("c1", "u1", "hi", client_ref="cr_1")
        again = await backend.send_message("c1", "u1", "hi", client_ref="cr_1")
        self.assertIs(first, again)
        self.assertEqual(len(await backend.fetch_messages("c1")), 1)

    async def test_writes_echo_onto_feed(self):
        feed = InMemoryFeedTransport()
        seen = []
        feed.bind(lambda topic, payload: seen.append(payload), lambda exc: None)
        await feed.join("room:c1:1", {"channel_id": "c1"})
        backend = InMemoryChatBackend(feed, echo_client_ref=False)

        message = await backend.send_message("c1", "u1", "hi", client_ref="cr_1")
        await backend.edit_message(message.id, "hi!")

        self.assertEqual([p["event"] for p in seen], ["INSERT", "UPDATE"])
        self.assertNotIn("client_ref", seen[0]["new"])
        self.assertEqual(seen[1]["old"]["content"], "hi")

    async def test_duplicate_member(self):
        backend = InMemoryChatBackend()
        backend.add_channel("c1", ["u1"])
        with self.assertRaises(AlreadyExists):
            await backend.add_member("c1", "u1", "admin")


if __name__ == "__main__":
    unittest.main()
