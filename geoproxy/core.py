"""
geoproxy.core
~~~~~~~~~~~~~
Non-blocking reverse proxy that runs admission middleware (the geoblock
filter) before forwarding a request to the upstream service.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from .config import Config, PolicyStore, load_policy
from .geoblock import COUNTRY_HEADER, GeoblockFilter
from .http import CaseInsensitiveHeaders, Request, Response, is_trusted_peer, resolve_client_ips
from .logger import ProxyLogger, get_logger

CRLF = b"\r\n"
BUFFER = 65_536
MAX_HEADER_LINES = 100

Middleware = Callable[[Request, Response, Callable[[], None]], None]

log = get_logger("core")


def run_proxy(config: Config) -> None:
    proxy = ProxyServer(config)
    try:
        asyncio.run(proxy.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Proxy shut down.")


class ProxyServer:
    def __init__(
        self,
        cfg: Config,
        policies: Optional[PolicyStore] = None,
        middleware: Optional[Sequence[Middleware]] = None,
    ) -> None:
        self.cfg = cfg
        self.policies = policies or PolicyStore(cfg.geoblock)
        self.middleware: List[Middleware] = list(
            middleware if middleware is not None else [GeoblockFilter(self.policies.current)]
        )
        self.logger = ProxyLogger(cfg.log_path, cfg.log_level)

    async def start(self) -> asyncio.AbstractServer:
        return await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
        )

    async def serve_forever(self) -> None:
        server = await self.start()
        self._install_reload_handler()

        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        print(f"▸ Proxy listening on {bind_str}  -> {self.cfg.upstream_host}:{self.cfg.upstream_port}")

        async with server:
            await server.serve_forever()

    def reload_policy(self) -> None:
        load_dotenv(override=True)
        old = self.policies.replace(load_policy())
        new = self.policies.current()
        log.info(
            {
                "enabled": new.enabled,
                "allowed": sorted(new.effective_allowed_countries()),
                "was_enabled": old.enabled,
            },
            "Geoblock policy reloaded.",
        )

    def _install_reload_handler(self) -> None:
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is None:
            return
        try:
            asyncio.get_running_loop().add_signal_handler(sighup, self.reload_policy)
        except (NotImplementedError, RuntimeError):
            # not available on this platform / outside the main thread
            pass

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peername = writer.get_extra_info("peername")
        peer_ip = peername[0] if peername else None
        method, url, client_ip = "-", "-", peer_ip or "-"

        try:
            req_line, raw_headers = await _read_request_head(reader)
            method, target, _ = _parse_request_line(req_line)
            url = target
            if method.upper() == "CONNECT":
                raise ProxyError(405, "Method Not Allowed")

            request = self._build_request(peer_ip, method, target, raw_headers)
            client_ip = request.ip or "-"
            self.logger.start(client_ip, method, url, request.headers.get("user-agent", ""))

            response = Response()
            if not self._run_middleware(request, response):
                status = response.status_code or 403
                await _send_simple_response(writer, status, response.body, response.headers)
                self.logger.block(
                    client_ip,
                    method,
                    url,
                    "geoblock" if status == 403 else "middleware",
                    status=status,
                    country=request.headers.get(COUNTRY_HEADER),
                )
                self.logger.end(client_ip, method, url, status, len(response.body), _elapsed_ms(start_ts))
                return

            sent = await self._forward(reader, writer, req_line, request)
            self.logger.end(client_ip, method, url, 200, sent, _elapsed_ms(start_ts))

        except ProxyError as e:
            try:
                await _send_simple_response(writer, e.status, e.msg.encode())
            except ConnectionError:
                pass
            self.logger.end(client_ip, method, url, e.status, 0, _elapsed_ms(start_ts))
        except Exception as e:  # noqa: BLE001
            log.error({"ip": client_ip, "error": repr(e)}, "Unhandled error while proxying request.")
            try:
                await _send_simple_response(writer, 500, b"Internal Server Error")
            except ConnectionError:
                pass
            self.logger.end(client_ip, method, url, 500, 0, _elapsed_ms(start_ts))
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass

    def _build_request(
        self,
        peer_ip: Optional[str],
        method: str,
        target: str,
        raw_headers: List[Tuple[str, str]],
    ) -> Request:
        headers = CaseInsensitiveHeaders(raw_headers)
        if COUNTRY_HEADER in headers and not is_trusted_peer(peer_ip, self.cfg.trusted_edge_ips):
            log.debug({"ip": peer_ip}, "Dropping cf-ipcountry from untrusted peer.")
            del headers[COUNTRY_HEADER]
        ip, ips = resolve_client_ips(peer_ip, headers, self.cfg.trust_proxy)
        return Request(method=method, target=target, headers=headers, ip=ip, ips=ips, peer=peer_ip)

    def _run_middleware(self, request: Request, response: Response) -> bool:
        """True when every middleware passed the request on."""
        for mw in self.middleware:
            passed = False

            def next_() -> None:
                nonlocal passed
                passed = True

            mw(request, response, next_)
            if not passed:
                return False
        return True

    async def _forward(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        req_line: bytes,
        request: Request,
    ) -> int:
        try:
            remote_reader, remote_writer = await asyncio.open_connection(
                self.cfg.upstream_host, self.cfg.upstream_port
            )
        except OSError as e:
            raise ProxyError(502, f"Upstream connect failed: {e}") from e

        headers = dict(request.headers)
        forwarded = [p for p in (headers.get("x-forwarded-for", ""), request.peer) if p]
        headers["x-forwarded-for"] = ", ".join(forwarded)

        remote_writer.write(_rebuild_request_head(req_line, headers))
        await remote_writer.drain()

        _, sent = await asyncio.gather(
            _pipe_stream(client_reader, remote_writer),
            _pipe_stream(remote_reader, client_writer),
        )
        return sent


class ProxyError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


def _elapsed_ms(start_ts: float) -> int:
    return int((time.time() - start_ts) * 1000)


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, List[Tuple[str, str]]]:
    head = b""
    count = 0
    while True:
        try:
            line = await reader.readline()
        except ValueError:
            # readline turns LimitOverrunError into ValueError
            raise ProxyError(400, "Bad Request: header line too long") from None
        if not line:
            raise ProxyError(400, "Bad Request: EOF before headers complete")
        head += line
        if line == CRLF:
            break
        count += 1
        if count > MAX_HEADER_LINES:
            raise ProxyError(400, "Bad Request: too many header lines")

    lines = head.split(CRLF)[:-1]
    if not lines or not lines[0]:
        raise ProxyError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs: List[Tuple[str, str]] = []
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            hdrs.append((k.decode("latin-1").strip(), v.decode("latin-1").strip()))
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    parts = line.decode("latin-1").strip().split()
    if len(parts) != 3:
        raise ProxyError(400, "Bad Request: malformed request-line")
    return parts[0], parts[1], parts[2]


_HOP_BY_HOP = {
    "proxy-authorization",
    "proxy-connection",
    "connection",
    "keep-alive",
    "te",
    "trailer",
    "upgrade",
}


def _rebuild_request_head(req_line: bytes, headers: Dict[str, str]) -> bytes:
    head = bytearray(req_line.rstrip() + CRLF)
    for k, v in headers.items():
        if k.lower() not in _HOP_BY_HOP:
            head.extend(f"{k}: {v}".encode("latin-1") + CRLF)
    head.extend(b"connection: close" + CRLF)
    head.extend(CRLF)
    return bytes(head)


_REASONS = {
    200: "OK",
    400: "Bad Request",
    403: "Forbidden",
    405: "Method Not Allowed",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
}


async def _send_simple_response(
    writer: asyncio.StreamWriter,
    status: int,
    body: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
) -> None:
    head = f"HTTP/1.1 {status} {_REASONS.get(status, 'Error')}\r\n"
    for k, v in (headers or {}).items():
        head += f"{k}: {v}\r\n"
    head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    writer.write(head.encode() + body)
    await writer.drain()


async def _pipe_stream(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> int:
    total = 0
    try:
        while not src.at_eof():
            chunk = await src.read(BUFFER)
            if not chunk:
                break
            dst.write(chunk)
            total += len(chunk)
            await dst.drain()
    except ConnectionError:
        pass
    finally:
        try:
            dst.close()
            await dst.wait_closed()
        except Exception:  # noqa: BLE001
            pass
    return total
