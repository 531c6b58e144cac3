"""SMTP listener adapter.

Accepts TCP connections with asyncio streams and drives one SmtpSession per
connection. Completed envelopes are handed to the MailProcessor as detached
tasks so a client hanging up never cancels a forward that has started.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Optional

from core.config import ServerConfig, SessionLimits
from core.models import Envelope
from core.processor import MailProcessor
from core.registry import AccountRegistry
from core.session import Reply, SessionState, SmtpSession

LOGGER = logging.getLogger(__name__)

# StreamReader buffer limit; a longer line without LF aborts the session.
STREAM_LIMIT = 64 * 1024

TOO_MANY_CONNECTIONS = Reply(421, "4.7.0 Too many connections, try again later", close=True)
IDLE_TIMEOUT = Reply(421, "4.4.2 Idle timeout, closing connection", close=True)
LINE_TOO_LONG = Reply(500, "5.5.2 Line too long", close=True)


def _format_peer(peername: object) -> Optional[str]:
    if isinstance(peername, tuple) and len(peername) >= 2:
        return f"{peername[0]}:{peername[1]}"
    return str(peername) if peername else None


class SmtpListener:
    """Serves one configured endpoint."""

    def __init__(
        self,
        server: ServerConfig,
        registry: AccountRegistry,
        processor: MailProcessor,
        limits: Optional[SessionLimits] = None,
        tls_context: Optional[ssl.SSLContext] = None,
        slots: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self._config = server
        self._registry = registry
        self._processor = processor
        self._limits = limits or SessionLimits()
        self._tls_context = tls_context
        # Shared between listeners so the ceiling applies process-wide.
        self._slots = slots or asyncio.Semaphore(self._limits.max_sessions)
        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: set[asyncio.Task] = set()
        self._forwards: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""

        if self._server is None or not self._server.sockets:
            return self._config.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    @property
    def pending_forwards(self) -> int:
        return len(self._forwards)

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._serve_connection,
            self._config.address,
            self._config.port,
            limit=STREAM_LIMIT,
        )
        LOGGER.info(
            "Listening as %s on %s:%s (starttls: %s)",
            self._config.hostname,
            self._config.address,
            self.port,
            "yes" if self._tls_context else "no",
        )

    async def close(self, grace: Optional[float] = None) -> None:
        """Stop accepting, then give in-flight work grace seconds to finish."""

        if grace is None:
            grace = self._limits.shutdown_grace
        if self._server is not None:
            self._server.close()

        deadline = asyncio.get_running_loop().time() + grace
        await self._drain(self._sessions, deadline, "session")
        await self._drain(self._forwards, deadline, "forward")

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    async def _drain(self, tasks: set[asyncio.Task], deadline: float, kind: str) -> None:
        pending = set(tasks)
        if not pending:
            return
        timeout = max(deadline - asyncio.get_running_loop().time(), 0)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            LOGGER.warning("Cancelling %s unfinished %s task(s) at shutdown", len(still_running), kind)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    def _dispatch(self, envelope: Envelope) -> None:
        LOGGER.info(
            "Queued %s bytes from %s for %s",
            len(envelope.data),
            envelope.sender or "<>",
            ", ".join(account.address for account in envelope.accounts),
        )
        task = asyncio.create_task(self._processor.handle(envelope))
        self._forwards.add(task)
        task.add_done_callback(self._forwards.discard)

    async def _serve_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = _format_peer(writer.get_extra_info("peername"))
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        try:
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=self._limits.queue_timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("Connection ceiling reached, rejecting %s", peer)
                await self._send(writer, TOO_MANY_CONNECTIONS)
                return
            try:
                await self._run_session(reader, writer, peer)
            finally:
                self._slots.release()
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("Connection from %s failed: %s", peer, exc)
        finally:
            if task is not None:
                self._sessions.discard(task)
            await self._close_writer(writer)

    async def _run_session(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Optional[str],
    ) -> None:
        session = SmtpSession(
            self._registry,
            self._dispatch,
            hostname=self._config.hostname,
            limits=self._limits,
            peer=peer,
            tls_available=self._tls_context is not None,
        )
        LOGGER.debug("Session opened for %s", peer)
        try:
            await self._send(writer, session.greeting())
            while session.state is not SessionState.ABORTED:
                try:
                    line = await asyncio.wait_for(reader.readuntil(b"\n"), timeout=self._limits.idle_timeout)
                except asyncio.TimeoutError:
                    session.abort("idle timeout")
                    await self._send(writer, IDLE_TIMEOUT)
                    break
                except asyncio.IncompleteReadError:
                    session.abort("peer disconnected")
                    break
                except asyncio.LimitOverrunError:
                    session.abort("line too long")
                    await self._send(writer, LINE_TOO_LONG)
                    break

                reply = session.receive(line)
                if reply is None:
                    continue
                await self._send(writer, reply)
                if reply.starttls:
                    await writer.start_tls(self._tls_context)
                    session.tls_started()
                if reply.close:
                    break
        except (ConnectionError, OSError, ssl.SSLError):
            session.abort("I/O error")
            raise
        except asyncio.CancelledError:
            session.abort("cancelled")
            raise
        finally:
            LOGGER.debug("Session closed for %s (%s)", peer, session.state.value)

    async def _send(self, writer: asyncio.StreamWriter, reply: Reply) -> None:
        writer.write(reply.encode())
        await writer.drain()

    async def _close_writer(self, writer: asyncio.StreamWriter) -> None:
        if writer.is_closing():
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("Error while closing connection: %s", exc)
