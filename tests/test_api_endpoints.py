from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import httpx
from starlette.datastructures import UploadFile

# The application code is built/run from within ./app in Docker; add it to sys.path for tests.
REPO_ROOT = Path(__file__).resolve().parents[1]
APP_ROOT = REPO_ROOT / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))
API_ROOT = APP_ROOT / "api"
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))

import main as api  # noqa: E402
from common.config import AppConfig  # noqa: E402
from common.errors import (  # noqa: E402
    ClamdConnectionError,
    ClamdSizeLimitExceeded,
    ClamdTimeoutError,
    ClamdUnexpectedResponse,
    ClamdUnknownCommand,
    ClamdVirusFound,
)

STATS_RESP = (
    b"POOLS: 1\n\nSTATE: VALID PRIMARY\nTHREADS: live 1  idle 0 max 10 idle-timeout 30\n"
    b"QUEUE: 0 items\n\tSTATS 0.000038\n\n"
    b"MEMSTATS: heap N/A mmap N/A used N/A free N/A releasable N/A pools 1 "
    b"pools_used 1307.045M pools_total 1307.093M\nEND"
)

UNREACHABLE = "something wrong happened while communicating with clamav"


class FakeClamd:
    """Stands in for ClamdClient; ``replies`` maps a method name to bytes or an exception."""

    def __init__(self, **replies):
        self.replies = replies
        self.calls: list[str] = []
        self.scanned: list[bytes] = []
        self.streams: list = []

    def _reply(self, name: str):
        self.calls.append(name)
        reply = self.replies.get(name, b"")
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def ping(self):
        return self._reply("ping")

    async def version(self):
        return self._reply("version")

    async def stats(self):
        return self._reply("stats")

    async def version_commands(self):
        return self._reply("version_commands")

    async def reload(self):
        self._reply("reload")

    async def shutdown(self):
        self._reply("shutdown")

    async def instream(self, stream, size):
        self.streams.append(stream)
        data = await stream.read()
        assert len(data) == size
        self.scanned.append(data)
        return self._reply("instream")


def _call(method: str, path: str, **kwargs) -> httpx.Response:
    async def go() -> httpx.Response:
        transport = httpx.ASGITransport(app=api.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            return await c.request(method, path, **kwargs)

    return asyncio.run(go())


def _use(monkeypatch, fake: FakeClamd) -> FakeClamd:
    monkeypatch.setattr(api, "clamd_client", fake)
    return fake


def test_healthz():
    resp = _call("GET", "/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_ping(monkeypatch):
    _use(monkeypatch, FakeClamd(ping=b"PONG"))
    resp = _call("GET", "/rest/v1/ping")
    assert resp.status_code == 200
    assert resp.json() == {"ping": "PONG"}


def test_ping_transport_error_is_bad_gateway(monkeypatch):
    _use(monkeypatch, FakeClamd(ping=ClamdConnectionError("error while dialing tcp/x:1")))
    resp = _call("GET", "/rest/v1/ping")
    assert resp.status_code == 502
    assert resp.json() == {"status": "error", "msg": UNREACHABLE}


def test_version(monkeypatch):
    _use(monkeypatch, FakeClamd(version=b"ClamAV 1.0.1/26961/Thu Jul  6 07:29:38 2023"))
    resp = _call("GET", "/rest/v1/version")
    assert resp.status_code == 200
    assert resp.json() == {"clamav_version": "ClamAV 1.0.1/26961/Thu Jul  6 07:29:38 2023"}


def test_version_unknown_command(monkeypatch):
    _use(monkeypatch, FakeClamd(version=ClamdUnknownCommand(b"UNKNOWN COMMAND")))
    resp = _call("GET", "/rest/v1/version")
    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "msg": "unknown command sent to clamav"}


def test_stats(monkeypatch):
    _use(monkeypatch, FakeClamd(stats=STATS_RESP))
    resp = _call("GET", "/rest/v1/stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["pools"] == 1
    assert body["state"] == "VALID PRIMARY"
    assert body["threads"] == "live 1  idle 0 max 10 idle-timeout 30"
    assert body["queue"] == "0 items\n\tSTATS 0.000038"
    assert body["memstats"].startswith("heap N/A")


def test_stats_parse_failure(monkeypatch):
    _use(monkeypatch, FakeClamd(stats=b"POOLS: many\nEND"))
    resp = _call("GET", "/rest/v1/stats")
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"
    assert "stats" in resp.json()["msg"]


def test_stats_timeout(monkeypatch):
    _use(monkeypatch, FakeClamd(stats=ClamdTimeoutError("STATS did not complete")))
    resp = _call("GET", "/rest/v1/stats")
    assert resp.status_code == 502
    assert resp.json()["msg"] == UNREACHABLE


def test_versioncommands(monkeypatch):
    _use(
        monkeypatch,
        FakeClamd(version_commands=b"ClamAV 1.0.1| COMMANDS: SCAN PING INSTREAM\n"),
    )
    resp = _call("GET", "/rest/v1/versioncommands")
    assert resp.status_code == 200
    assert resp.json() == {
        "clamav_version": "ClamAV 1.0.1",
        "commands": ["SCAN", "PING", "INSTREAM"],
    }


def test_versioncommands_parse_failure(monkeypatch):
    _use(monkeypatch, FakeClamd(version_commands=b"ClamAV 1.0.1"))
    resp = _call("GET", "/rest/v1/versioncommands")
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"


def test_reload(monkeypatch):
    fake = _use(monkeypatch, FakeClamd())
    resp = _call("POST", "/rest/v1/reload")
    assert resp.status_code == 200
    assert resp.json() == {"status": "RELOADING"}
    assert fake.calls == ["reload"]


def test_reload_unexpected_reply(monkeypatch):
    exc = ClamdUnexpectedResponse(
        b"NOPE", "unexpected response from clamav. Expected RELOADING but got NOPE"
    )
    _use(monkeypatch, FakeClamd(reload=exc))
    resp = _call("POST", "/rest/v1/reload")
    assert resp.status_code == 500
    assert resp.json() == {
        "status": "error",
        "msg": "unexpected response from clamav. Expected RELOADING but got NOPE",
    }


def test_reload_requires_post(monkeypatch):
    _use(monkeypatch, FakeClamd())
    assert _call("GET", "/rest/v1/reload").status_code == 405


def test_shutdown(monkeypatch):
    fake = _use(monkeypatch, FakeClamd())
    resp = _call("POST", "/rest/v1/shutdown")
    assert resp.status_code == 200
    assert resp.json() == {"status": "Shutting down"}
    assert fake.calls == ["shutdown"]


def test_shutdown_transport_error(monkeypatch):
    _use(monkeypatch, FakeClamd(shutdown=ClamdConnectionError("dial failed")))
    resp = _call("POST", "/rest/v1/shutdown")
    assert resp.status_code == 502


def test_scan_clean_file(monkeypatch):
    fake = _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    resp = _call("POST", "/rest/v1/scan", files={"file": ("hello.txt", b"foobar", "text/plain")})
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "noerror",
        "msg": "stream: OK",
        "signature": "",
        "virus_found": False,
    }
    assert fake.scanned == [b"foobar"]


def test_scan_reads_the_upload_asynchronously(monkeypatch):
    fake = _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    payload = b"x" * (2 * 1024 * 1024)
    resp = _call("POST", "/rest/v1/scan", files={"file": ("big.bin", payload)})
    assert resp.status_code == 200
    # The UploadFile itself is handed over, so a spooled file is read off the event loop.
    assert isinstance(fake.streams[0], UploadFile)
    assert fake.scanned == [payload]


def test_scan_empty_file(monkeypatch):
    fake = _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    resp = _call("POST", "/rest/v1/scan", files={"file": ("empty.bin", b"")})
    assert resp.status_code == 200
    assert fake.scanned == [b""]


def test_scan_virus_found(monkeypatch):
    _use(
        monkeypatch,
        FakeClamd(instream=ClamdVirusFound(b"stream: Win.Test.EICAR_HDB-1 FOUND")),
    )
    resp = _call("POST", "/rest/v1/scan", files={"file": ("eicar.com", b"X5O!P%@AP")})
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "error",
        "msg": "file contains potential virus",
        "signature": "Win.Test.EICAR_HDB-1",
        "virus_found": True,
    }


def test_scan_size_limit_exceeded(monkeypatch):
    _use(
        monkeypatch,
        FakeClamd(instream=ClamdSizeLimitExceeded(b"INSTREAM size limit exceeded. ERROR")),
    )
    resp = _call("POST", "/rest/v1/scan", files={"file": ("big.bin", b"a" * 1024)})
    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "msg": "clamav: size limit exceeded"}


def test_scan_transport_error(monkeypatch):
    _use(monkeypatch, FakeClamd(instream=ClamdConnectionError("broken pipe")))
    resp = _call("POST", "/rest/v1/scan", files={"file": ("a.txt", b"abc")})
    assert resp.status_code == 502
    assert resp.json() == {"status": "error", "msg": UNREACHABLE}


def test_scan_unrecognized_reply_is_an_error(monkeypatch):
    _use(monkeypatch, FakeClamd(instream=b"stream: something odd"))
    resp = _call("POST", "/rest/v1/scan", files={"file": ("a.txt", b"abc")})
    assert resp.status_code == 500
    body = resp.json()
    assert body["status"] == "error"
    assert body["virus_found"] is False


def test_scan_without_file_part(monkeypatch):
    fake = _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    resp = _call("POST", "/rest/v1/scan", files={"upload": ("a.txt", b"abc")})
    assert resp.status_code == 400
    assert resp.json() == {
        "status": "error",
        "msg": "bad request: failed to parse file: no such file",
    }
    assert fake.calls == []


def test_scan_file_field_must_be_a_file(monkeypatch):
    _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    resp = _call(
        "POST",
        "/rest/v1/scan",
        data={"file": "not a file"},
        files={"other": ("a.txt", b"abc")},
    )
    assert resp.status_code == 400
    assert resp.json()["msg"] == "bad request: failed to parse file: no such file"


def test_scan_requires_multipart(monkeypatch):
    fake = _use(monkeypatch, FakeClamd(instream=b"stream: OK"))
    resp = _call(
        "POST",
        "/rest/v1/scan",
        content=b"foobar",
        headers={"Content-Type": "text/plain"},
    )
    assert resp.status_code == 400
    assert resp.json() == {
        "status": "error",
        "msg": "bad request: failed to parse file: request Content-Type isn't multipart/form-data",
    }
    assert fake.calls == []


def test_client_not_initialized(monkeypatch):
    monkeypatch.setattr(api, "clamd_client", None)
    resp = _call("GET", "/rest/v1/ping")
    assert resp.status_code == 503


def test_request_id_is_echoed(monkeypatch):
    _use(monkeypatch, FakeClamd(ping=b"PONG"))
    resp = _call("GET", "/rest/v1/ping", headers={"X-Request-ID": "req-corr-1"})
    assert resp.headers["X-Request-ID"] == "req-corr-1"


def test_request_id_is_generated(monkeypatch):
    _use(monkeypatch, FakeClamd(ping=b"PONG"))
    resp = _call("GET", "/rest/v1/ping")
    assert len(resp.headers["X-Request-ID"]) == 36


def test_access_log_record(monkeypatch, caplog):
    _use(monkeypatch, FakeClamd(ping=b"PONG"))
    with caplog.at_level(logging.INFO, logger="api"):
        _call("GET", "/rest/v1/ping", headers={"User-Agent": "pytest"})
    records = [r for r in caplog.records if r.getMessage() == "request completed"]
    assert len(records) == 1
    record = records[0]
    assert record.method == "GET"
    assert record.status == 200
    assert record.user_agent == "pytest"
    assert record.url.endswith("/rest/v1/ping")


def test_build_clamd_client_from_config():
    client = api.build_clamd_client(
        AppConfig(clamav_addr="clamd:3311", clamav_timeout=5.0, clamav_command_timeout=0.0)
    )
    assert client.address == "clamd:3311"
    assert client.network == "tcp"
    assert client.timeout == 5.0
    assert client.command_timeout is None
