"""
ephemtls.core
~~~~~~~~~~~~~
Non-blocking HTTPS listener serving with an on-the-fly, self-signed
credential.  It is also the recovery boundary for fail-fast escalations:
an :class:`IntentionalPanicError` raised while handling a connection stops
the listener and is re-raised from :meth:`WebServer.serve_forever`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

from cryptography import x509

from .config import Config
from .guard import IntentionalPanicError, recover
from .logger import ServerLogger
from .tls import (
    Credential,
    generate_web_server_certificate,
    server_ssl_context,
    write_credential,
)

CRLF = b"\r\n"
MAX_HEAD = 16_384
BODY = b"OK"

log = logging.getLogger(__name__)


def run_server(config: Config) -> None:
    server = WebServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Server shut down.")
    finally:
        server.logger.close()


class WebServer:
    def __init__(
        self,
        cfg: Config,
        logger: Optional[ServerLogger] = None,
        credential: Optional[Credential] = None,
    ) -> None:
        self.cfg = cfg
        self.logger = logger or ServerLogger(cfg.log_path)
        if credential is None:
            credential = generate_web_server_certificate(
                cfg.host_name,
                key_size=cfg.key_size,
                policy=cfg.backdate_policy(),
            )
        self.credential = credential
        if cfg.cert_dir:
            write_credential(cfg.cert_dir, credential)

        cert = x509.load_pem_x509_certificate(credential.certificate_pem.encode())
        self.logger.credential(
            cert.serial_number, cert.not_valid_before_utc, cert.not_valid_after_utc
        )

        self.started = asyncio.Event()
        self.sockets: list = []
        self._stop = asyncio.Event()
        self._fatal: Optional[IntentionalPanicError] = None

    async def serve_forever(self) -> None:
        server = await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
            ssl=server_ssl_context(self.credential),
        )
        self.sockets = list(server.sockets)

        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        print(f"▸ Listening on {bind_str}  (host_name={self.cfg.host_name!r})")

        async with server:
            try:
                self.logger.listening(bind_str, self.cfg.host_name)
            except IntentionalPanicError as err:
                self._escalate(err)
            self.started.set()
            await self._stop.wait()

        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        self._stop.set()

    def _escalate(self, err: IntentionalPanicError) -> None:
        # Connection tasks swallow whatever they raise; hand the error to
        # serve_forever instead.
        if self._fatal is None:
            self._fatal = recover(err)
        self._stop.set()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "-"

        try:
            req_line, _ = await _read_request_head(reader)
            method, path, _ = _parse_request_line(req_line)

            await _send_simple_response(writer, 200, BODY)
            self.logger.served(
                peer_ip,
                method,
                path,
                200,
                int((time.time() - start_ts) * 1000),
            )

        except IntentionalPanicError as err:
            self._escalate(err)
        except HTTPError as e:
            try:
                await _send_simple_response(writer, e.status, e.msg.encode())
            except (ConnectionError, OSError):
                pass
            try:
                self.logger.rejected(peer_ip, e.status, e.msg)
            except IntentionalPanicError as err:
                self._escalate(err)
        except Exception:
            log.exception("unhandled error serving %s", peer_ip)
            try:
                await _send_simple_response(writer, 500, b"Internal Server Error")
            except ConnectionError:
                pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


class HTTPError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, Dict[str, str]]:
    head = b""
    while True:
        line = await reader.readline()
        if not line:
            raise HTTPError(400, "Bad Request: EOF before headers complete")
        head += line
        if len(head) > MAX_HEAD:
            raise HTTPError(431, "Request Header Fields Too Large")
        if line == CRLF:
            break

    lines = head.split(CRLF)[:-1]
    if not lines or not lines[0]:
        raise HTTPError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs = {}
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            hdrs[k.decode(errors="replace").strip().lower()] = v.decode(errors="replace").strip()
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    parts = line.decode(errors="replace").strip().split()
    if len(parts) != 3:
        raise HTTPError(400, "Bad Request: malformed request-line")
    method, path, version = parts
    return method, path, version


async def _send_simple_response(writer: asyncio.StreamWriter, status: int, body: bytes = b"") -> None:
    reason = {200: "OK", 400: "Bad Request",
              431: "Request Header Fields Too Large"}.get(status, "Error")
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    writer.write(head.encode() + body)
    await writer.drain()
