from __future__ import annotations

import asyncio
import logging
import os
import signal
import json
from typing import Dict, List, Optional, Tuple

import pytest

from geoproxy.config import Config, GeoblockPolicy, parse_networks
from geoproxy.core import MAX_HEADER_LINES, ProxyError, ProxyServer, _read_request_head

RU_BY = GeoblockPolicy(enabled=True, allowed_countries=frozenset({"RU", "BY"}))


async def _start_upstream(seen: List[Dict[str, str]]) -> asyncio.AbstractServer:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        headers: Dict[str, str] = {}
        await reader.readline()
        while True:
            line = await reader.readline()
            if line in (b"\r\n", b""):
                break
            k, v = line.decode().split(":", 1)
            headers[k.strip().lower()] = v.strip()
        seen.append(headers)
        writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 8\r\nConnection: close\r\n\r\nupstream")
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host="127.0.0.1", port=0)


async def _request(port: int, headers: Dict[str, str]) -> Tuple[int, bytes]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    head = "GET /hello HTTP/1.1\r\nHost: localhost\r\n"
    head += "".join(f"{k}: {v}\r\n" for k, v in headers.items())
    writer.write((head + "\r\n").encode())
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    status_line, _, rest = raw.partition(b"\r\n")
    _, _, body = rest.partition(b"\r\n\r\n")
    return int(status_line.split()[1]), body


def _roundtrip(
    tmp_path,
    headers: Dict[str, str],
    policy: GeoblockPolicy = RU_BY,
    trusted: Optional[frozenset] = None,
    trust_proxy: bool = False,
) -> Tuple[int, bytes, List[Dict[str, str]]]:
    async def scenario():
        seen: List[Dict[str, str]] = []
        upstream = await _start_upstream(seen)
        upstream_port = upstream.sockets[0].getsockname()[1]
        cfg = Config(
            listen_host="127.0.0.1",
            listen_port=0,
            upstream_host="127.0.0.1",
            upstream_port=upstream_port,
            trust_proxy=trust_proxy,
            trusted_edge_ips=parse_networks(trusted if trusted is not None else ("127.0.0.1",)),
            log_path=str(tmp_path / "proxy.log"),
            geoblock=policy,
        )
        proxy = ProxyServer(cfg)
        server = await proxy.start()
        port = server.sockets[0].getsockname()[1]
        try:
            status, body = await _request(port, headers)
        finally:
            server.close()
            upstream.close()
        return status, body, seen

    return asyncio.run(scenario())


def test_allowed_country_is_forwarded(tmp_path) -> None:
    status, body, seen = _roundtrip(tmp_path, {"CF-IPCountry": "RU"})
    assert status == 200
    assert body == b"upstream"
    assert seen[0]["cf-ipcountry"] == "RU"
    assert seen[0]["x-forwarded-for"] == "127.0.0.1"


def test_denied_country_gets_json_403(tmp_path) -> None:
    status, body, seen = _roundtrip(tmp_path, {"CF-IPCountry": "US"})
    assert status == 403
    assert json.loads(body)["country_code"] == "US"
    assert seen == []


def test_missing_country_fails_open(tmp_path) -> None:
    status, body, seen = _roundtrip(tmp_path, {})
    assert status == 200
    assert body == b"upstream"


def test_disabled_policy_forwards_everything(tmp_path) -> None:
    status, body, _ = _roundtrip(tmp_path, {"CF-IPCountry": "US"}, policy=GeoblockPolicy(enabled=False))
    assert status == 200


def test_country_header_from_untrusted_peer_is_dropped(tmp_path) -> None:
    status, body, seen = _roundtrip(tmp_path, {"CF-IPCountry": "US"}, trusted=frozenset())
    assert status == 200
    assert "cf-ipcountry" not in seen[0]


def test_trust_proxy_appends_to_forwarded_chain(tmp_path) -> None:
    status, _, seen = _roundtrip(
        tmp_path, {"CF-IPCountry": "BY", "X-Forwarded-For": "203.0.113.7"}, trust_proxy=True
    )
    assert status == 200
    assert seen[0]["x-forwarded-for"] == "203.0.113.7, 127.0.0.1"


def test_connect_is_rejected(tmp_path) -> None:
    async def scenario():
        cfg = Config(listen_host="127.0.0.1", listen_port=0, log_path=str(tmp_path / "proxy.log"))
        server = await ProxyServer(cfg).start()
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"CONNECT example.com:443 HTTP/1.1\r\n\r\n")
            await writer.drain()
            raw = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
        finally:
            server.close()
        return raw

    raw = asyncio.run(scenario())
    assert raw.startswith(b"HTTP/1.1 405")


def test_upstream_down_gives_502(tmp_path) -> None:
    async def scenario():
        placeholder = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=0)
        dead_port = placeholder.sockets[0].getsockname()[1]
        placeholder.close()
        await placeholder.wait_closed()

        cfg = Config(
            listen_host="127.0.0.1",
            listen_port=0,
            upstream_port=dead_port,
            log_path=str(tmp_path / "proxy.log"),
        )
        server = await ProxyServer(cfg).start()
        port = server.sockets[0].getsockname()[1]
        try:
            return await _request(port, {})
        finally:
            server.close()

    status, _ = asyncio.run(scenario())
    assert status == 502


def test_reload_policy_swaps_snapshot(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    proxy = ProxyServer(Config(log_path=str(tmp_path / "proxy.log"), geoblock=RU_BY))
    before = proxy.policies.current()

    monkeypatch.setenv("GEOBLOCK_ENABLED", "false")
    proxy.reload_policy()

    assert before is RU_BY
    assert proxy.policies.current() == GeoblockPolicy(enabled=False)


def test_trusted_edge_cidr_keeps_country_header(tmp_path) -> None:
    status, body, seen = _roundtrip(tmp_path, {"CF-IPCountry": "US"}, trusted=("127.0.0.0/8",))
    assert status == 403
    assert json.loads(body)["country_code"] == "US"
    assert seen == []


def _read_head(data: bytes) -> ProxyError:
    async def scenario():
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        with pytest.raises(ProxyError) as exc:
            await _read_request_head(reader)
        return exc.value

    return asyncio.run(scenario())


def test_overlong_header_line_is_bad_request() -> None:
    err = _read_head(b"GET / HTTP/1.1\r\nX-Long: " + b"a" * 70_000 + b"\r\n\r\n")
    assert err.status == 400


def test_too_many_header_lines_is_bad_request() -> None:
    lines = b"".join(b"X-H%d: v\r\n" % i for i in range(MAX_HEADER_LINES + 1))
    err = _read_head(b"GET / HTTP/1.1\r\n" + lines + b"\r\n")
    assert err.status == 400


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record.msg)


def test_other_middleware_rejection_is_logged_as_middleware(tmp_path) -> None:
    def throttle(request, response, next_) -> None:
        response.status(429).json({"error": "slow down"})

    access = logging.getLogger("geoproxy.access")
    handler = _ListHandler()

    async def scenario():
        cfg = Config(listen_host="127.0.0.1", listen_port=0, log_path=str(tmp_path / "proxy.log"))
        proxy = ProxyServer(cfg, middleware=[throttle])
        access.addHandler(handler)
        server = await proxy.start()
        port = server.sockets[0].getsockname()[1]
        try:
            return await _request(port, {})
        finally:
            server.close()

    try:
        status, body = asyncio.run(scenario())
    finally:
        access.removeHandler(handler)

    assert status == 429
    assert json.loads(body) == {"error": "slow down"}
    blocks = [r for r in handler.records if isinstance(r, dict) and r.get("event") == "block"]
    assert len(blocks) == 1
    assert blocks[0]["reason"] == "middleware"
    assert blocks[0]["status"] == 429


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="platform has no SIGHUP")
def test_sighup_reloads_policy(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    proxy = ProxyServer(Config(log_path=str(tmp_path / "proxy.log"), geoblock=RU_BY))
    monkeypatch.setenv("GEOBLOCK_ENABLED", "false")

    async def scenario():
        loop = asyncio.get_running_loop()
        proxy._install_reload_handler()
        try:
            os.kill(os.getpid(), signal.SIGHUP)
            for _ in range(100):
                if proxy.policies.current() is not RU_BY:
                    break
                await asyncio.sleep(0.01)
        finally:
            loop.remove_signal_handler(signal.SIGHUP)

    asyncio.run(scenario())
    assert proxy.policies.current() == GeoblockPolicy(enabled=False)
