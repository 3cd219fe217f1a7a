"""Transparent WebSocket <-> TCP relay for browser VNC consoles."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class ConsoleRelay:
    """Copy bytes both ways between an accepted WebSocket and a TCP stream.

    The VNC stream is never inspected. The TCP side reads with a deadline so
    the loop wakes up regularly to notice that the other direction finished;
    a deadline expiring is not an error. Teardown closes both ends exactly
    once, whichever loop stops first.
    """

    def __init__(
        self,
        websocket: WebSocket,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        read_timeout: float = 30.0,
        label: str = "",
    ) -> None:
        self._websocket = websocket
        self._reader = reader
        self._writer = writer
        self._read_timeout = read_timeout
        self._label = label
        self._done = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self) -> None:
        ws_task = asyncio.create_task(self._ws_to_tcp())
        tcp_task = asyncio.create_task(self._tcp_to_ws())
        try:
            await asyncio.wait({ws_task, tcp_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._done.set()
            for task in (ws_task, tcp_task):
                task.cancel()
            for task in (ws_task, tcp_task):
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self.close()

    async def _ws_to_tcp(self) -> None:
        try:
            while not self._done.is_set():
                message = await self._websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data is None:
                    # RFB is binary-only; text frames carry nothing for the server.
                    continue
                self._writer.write(data)
                await self._writer.drain()
        except WebSocketDisconnect:
            pass
        except (OSError, RuntimeError) as exc:
            logger.debug("WebSocket -> TCP relay for %s ended: %s", self._label, exc)

    async def _tcp_to_ws(self) -> None:
        try:
            while not self._done.is_set():
                try:
                    chunk = await asyncio.wait_for(self._reader.read(READ_CHUNK_SIZE), self._read_timeout)
                except asyncio.TimeoutError:
                    continue
                if not chunk:
                    break
                await self._websocket.send_bytes(chunk)
        except WebSocketDisconnect:
            pass
        except (OSError, RuntimeError) as exc:
            logger.debug("TCP -> WebSocket relay for %s ended: %s", self._label, exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._done.set()
        self._writer.close()
        with contextlib.suppress(OSError, RuntimeError):
            await self._writer.wait_closed()
        with contextlib.suppress(OSError, RuntimeError, WebSocketDisconnect):
            await self._websocket.close()
        logger.info("Console relay for %s closed", self._label)


__all__ = ["ConsoleRelay", "READ_CHUNK_SIZE"]
