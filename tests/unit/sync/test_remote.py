"""Tests for the aiohttp remote client against a local test server."""

import pytest
from aiohttp import test_utils, web

from src.sync.errors import RemoteRejected, RemoteUnreachable
from src.sync.models import EndpointCandidate, RecordKind
from src.sync.remote import extract_remote_id


def _tracker_app(
    received: list | None = None, submit_status: int = 201, submit_body=None
) -> web.Application:
    received = received if received is not None else []

    async def health(request):
        return web.json_response({"status": "ok"})

    async def create(request):
        payload = await request.json()
        received.append((request.path, payload, request.headers.get("User-Agent")))
        if submit_status >= 400:
            return web.Response(status=submit_status, text="Internal Server Error")
        if submit_body is not None:
            return web.Response(status=submit_status, text=submit_body)
        return web.json_response({"_id": "srv-1", **payload}, status=submit_status)

    app = web.Application()
    app.router.add_get("/api/health", health)
    for kind in RecordKind:
        app.router.add_post(kind.resource_path, create)
    return app


async def _serve(
    app: web.Application,
) -> tuple[test_utils.TestServer, EndpointCandidate]:
    server = test_utils.TestServer(app)
    await server.start_server()
    address = str(server.make_url("/")).rstrip("/")
    return server, EndpointCandidate(priority=0, address=address)


class TestHealthCheck:
    """Test GET /api/health."""

    @pytest.mark.asyncio
    async def test_healthy_endpoint(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_tracker_app())
        client = RemoteClient()
        try:
            assert await client.check_health(endpoint) == {"status": "ok"}
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_missing_health_route_is_rejected(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(web.Application())
        client = RemoteClient()
        try:
            with pytest.raises(RemoteRejected) as exc_info:
                await client.check_health(endpoint)
            assert exc_info.value.status_code == 404
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_closed_port_is_unreachable(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_tracker_app())
        await server.close()
        client = RemoteClient()
        try:
            with pytest.raises(RemoteUnreachable):
                await client.check_health(endpoint)
        finally:
            await client.close()


class TestSubmit:
    """Test POST /api/<kind>."""

    @pytest.mark.asyncio
    async def test_posts_payload_to_kind_collection(self):
        from src.sync.remote import RemoteClient

        received = []
        app = _tracker_app(received)
        server, endpoint = await _serve(app)
        client = RemoteClient()
        try:
            response = await client.submit(
                endpoint, RecordKind.CONTACTS, {"name": "Jane"}
            )
        finally:
            await client.close()
            await server.close()

        assert response["_id"] == "srv-1"
        path, payload, user_agent = received[0]
        assert path == "/api/contacts"
        assert payload == {"name": "Jane"}
        assert user_agent.startswith("job-sync/")

    @pytest.mark.asyncio
    async def test_server_error_is_rejected(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_tracker_app(submit_status=500))
        client = RemoteClient()
        try:
            with pytest.raises(RemoteRejected) as exc_info:
                await client.submit(endpoint, RecordKind.APPLICATIONS, {})
        finally:
            await client.close()
            await server.close()

        assert exc_info.value.status_code == 500
        assert "Internal Server Error" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_non_json_success_is_rejected(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_tracker_app(submit_body="created!"))
        client = RemoteClient()
        try:
            with pytest.raises(RemoteRejected, match="not JSON"):
                await client.submit(endpoint, RecordKind.APPLICATIONS, {})
        finally:
            await client.close()
            await server.close()


def _garbled_app(status: int) -> web.Application:
    """Answers every route with bytes that are not valid UTF-8."""

    async def garbled(request):
        return web.Response(
            status=status,
            body=b"\xff\xfe\xfa",
            content_type="text/plain",
            charset="utf-8",
        )

    app = web.Application()
    app.router.add_get("/api/health", garbled)
    for kind in RecordKind:
        app.router.add_post(kind.resource_path, garbled)
    return app


class TestUndecodableBodies:
    """Test responses whose body does not match the declared charset."""

    @pytest.mark.asyncio
    async def test_server_error_with_garbled_body_is_rejected(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_garbled_app(500))
        client = RemoteClient()
        try:
            with pytest.raises(RemoteRejected) as exc_info:
                await client.submit(endpoint, RecordKind.APPLICATIONS, {})
        finally:
            await client.close()
            await server.close()

        assert exc_info.value.status_code == 500
        assert "\ufffd" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_success_with_garbled_body_is_rejected(self):
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_garbled_app(201))
        client = RemoteClient()
        try:
            with pytest.raises(RemoteRejected, match="not JSON"):
                await client.submit(endpoint, RecordKind.APPLICATIONS, {})
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_healthy_endpoint_with_garbled_body(self):
        """A 200 health answer counts as healthy even if the body is garbage."""
        from src.sync.remote import RemoteClient

        server, endpoint = await _serve(_garbled_app(200))
        client = RemoteClient()
        try:
            assert await client.check_health(endpoint) == {}
        finally:
            await client.close()
            await server.close()


def test_decode_body_falls_back_on_unknown_charset():
    from src.sync.remote import _decode_body

    assert _decode_body("café".encode(), "no-such-charset") == "café"
    assert _decode_body(b"ok\xff", None) == "ok\ufffd"


class TestExtractRemoteId:
    """Test server id extraction."""

    def test_plain_document(self):
        assert extract_remote_id({"_id": "abc"}) == "abc"
        assert extract_remote_id({"id": 7}) == "7"

    def test_data_envelope(self):
        assert extract_remote_id({"success": True, "data": {"_id": "abc"}}) == "abc"

    def test_missing_id(self):
        assert extract_remote_id({"ok": True}) is None
        assert extract_remote_id(["not", "a", "dict"]) is None
