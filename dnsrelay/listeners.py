"""Plain DNS listeners over UDP and TCP that feed a :class:`Proxy`."""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
import threading
from typing import Any, Optional

import dns.message

from dnsrelay.core import DEFAULT_TIMEOUT, DNSContext, Proto, Proxy
from dnsrelay.framing import MAX_MSG_SIZE, read_prefixed, write_prefixed

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
"""How often the listener loops look at the started flag, in seconds."""


def _family(host: str) -> socket.AddressFamily:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return socket.AF_INET

    return socket.AF_INET6 if ip.version == 6 else socket.AF_INET


def _log_non_crit(err: BaseException, msg: str) -> None:
    if isinstance(err, (EOFError, BrokenPipeError, ConnectionError)):
        log.debug("%s: connection is closed; original error: %s", msg, err)
    elif isinstance(err, TimeoutError):
        log.debug("%s: connection timed out; original error: %s", msg, err)
    elif isinstance(err, OSError) and err.errno is not None and err.errno == 9:
        log.debug("%s: connection is closed; original error: %s", msg, err)
    else:
        log.error("%s: %s", msg, err)


class ProxyServer:
    """Listens on the UDP and TCP addresses of a proxy's configuration.

    Listen addresses are ``(host, port)`` tuples; port zero picks a free
    port, which :meth:`addr` then reports.
    """

    def __init__(self, proxy: Proxy) -> None:
        self.proxy = proxy
        self._lock = threading.RLock()
        self._started = False
        self._udp: list[socket.socket] = []
        self._tcp: list[socket.socket] = []
        self._threads: list[threading.Thread] = []
        self._conns: set[socket.socket] = set()
        self._conns_lock = threading.Lock()

    @property
    def started(self) -> bool:
        """Whether the listeners are running."""
        return self._started

    def __enter__(self) -> "ProxyServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self) -> None:
        """Open every listener and start serving requests."""
        cfg = self.proxy.config
        with self._lock:
            if self._started:
                raise RuntimeError("dns proxy server is already started")

            log.info("starting the dns proxy server")
            try:
                for addr in cfg.udp_listen_addrs:
                    self._udp.append(self._create_udp(addr))
                for addr in cfg.tcp_listen_addrs:
                    self._tcp.append(self._create_tcp(addr))
            except OSError:
                self._close_sockets()
                raise

            self._started = True
            for sock in self._udp:
                self._spawn_loop(self._udp_loop, sock)
            for sock in self._tcp:
                self._spawn_loop(self._tcp_loop, sock, Proto.TCP)

    def stop(self) -> None:
        """Close every listener and the upstreams.

        Does nothing if the server is not started.  Raises ``RuntimeError``
        once if anything failed to close.
        """
        log.info("stopping the dns proxy server")
        with self._lock:
            if not self._started:
                log.info("the dns proxy server is not started")
                return

            self._started = False
            with self._conns_lock:
                for conn in list(self._conns):
                    try:
                        conn.shutdown(socket.SHUT_RDWR)
                    except OSError:
                        pass

            for thread in self._threads:
                thread.join()
            self._threads.clear()

            errors = self._close_sockets()
            try:
                self.proxy.config.upstream_config.close()
            except Exception as err:  # noqa: BLE001 - gathered and re-raised
                errors.append(err)

            log.info("stopped the dns proxy server")
            if errors:
                detail = "; ".join(str(e) for e in errors)
                raise RuntimeError(f"stopping dns proxy server: {detail}") from errors[0]

    def addrs(self, proto: Any) -> list:
        """Return the local addresses listening for ``proto``."""
        proto = Proto(proto)
        with self._lock:
            if proto is Proto.UDP:
                return [s.getsockname() for s in self._udp]
            if proto is Proto.TCP:
                return [s.getsockname() for s in self._tcp]

            return []

    def addr(self, proto: Any) -> Optional[tuple]:
        """Return the first local address listening for ``proto``, or None."""
        found = self.addrs(proto)
        return found[0] if found else None

    def _spawn_loop(self, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _close_sockets(self) -> list[Exception]:
        errors: list[Exception] = []
        for sock in (*self._tcp, *self._udp):
            try:
                sock.close()
            except OSError as err:
                errors.append(err)
        self._tcp.clear()
        self._udp.clear()
        return errors

    def _create_udp(self, addr: tuple) -> socket.socket:
        host, port = addr[0], addr[1]
        log.info("creating the udp server socket")
        sock = socket.socket(_family(host), socket.SOCK_DGRAM)
        try:
            size = self.proxy.config.udp_buffer_size
            if size > 0:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, size)
            sock.bind((host, port))
            sock.settimeout(_POLL_INTERVAL)
        except OSError as err:
            sock.close()
            raise OSError(f"listening to udp socket: {err}") from err

        log.info("listening to udp://%s", sock.getsockname())
        return sock

    def _create_tcp(self, addr: tuple) -> socket.socket:
        host, port = addr[0], addr[1]
        log.info("creating a tcp server socket")
        sock = socket.socket(_family(host), socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen()
            sock.settimeout(_POLL_INTERVAL)
        except OSError as err:
            sock.close()
            raise OSError(f"starting listening on tcp socket: {err}") from err

        log.info("listening to tcp://%s", sock.getsockname())
        return sock

    def _udp_loop(self, sock: socket.socket) -> None:
        log.info("entering the udp listener loop on %s", sock.getsockname())
        sema = self.proxy.request_sema
        while self._started:
            try:
                data, remote = sock.recvfrom(MAX_MSG_SIZE)
            except TimeoutError:
                continue
            except OSError as err:
                if self._started:
                    log.error("got error when reading from udp listen: %s", err)
                break

            if not data:
                continue

            sema.acquire()
            threading.Thread(
                target=self._udp_handle_packet, args=(data, remote, sock), daemon=True
            ).start()

    def _udp_handle_packet(self, data: bytes, remote: tuple, sock: socket.socket) -> None:
        try:
            log.debug("start handling new udp packet from %s", remote)
            try:
                req = dns.message.from_wire(data)
            except Exception as err:  # noqa: BLE001 - malformed wire data
                log.error("unpacking udp packet: %s", err)
                return

            ctx = self.proxy.new_context(Proto.UDP, req)
            ctx.addr = remote
            ctx.conn = sock
            ctx.responder = self._respond_udp
            try:
                self.proxy.handle_dns_request(ctx)
            except Exception as err:  # noqa: BLE001 - logged per request
                log.debug("error handling dns (%s) request: %s", ctx.proto.value, err)
        finally:
            self.proxy.request_sema.release()

    def _respond_udp(self, ctx: DNSContext) -> None:
        if ctx.res is None:
            return

        wire = ctx.res.to_wire()
        sock = ctx.conn
        if sock.fileno() == -1:
            return

        try:
            sent = sock.sendto(wire, ctx.addr)
        except OSError:
            if sock.fileno() == -1:
                return
            raise

        if sent != len(wire):
            raise OSError(f"udp write returned with {sent} != {len(wire)}")

    def _tcp_loop(self, listener: socket.socket, proto: Proto) -> None:
        log.info("entering the %s listener loop on %s", proto.value, listener.getsockname())
        sema = self.proxy.request_sema
        while self._started:
            try:
                conn, remote = listener.accept()
            except TimeoutError:
                continue
            except OSError as err:
                if self._started:
                    log.info("got error when reading from tcp listen: %s", err)
                break

            sema.acquire()
            threading.Thread(
                target=self._handle_tcp_connection, args=(conn, remote, proto), daemon=True
            ).start()

    def _handle_tcp_connection(self, conn: socket.socket, remote: tuple, proto: Proto) -> None:
        with self._conns_lock:
            self._conns.add(conn)
        try:
            with conn:
                self._serve_tcp(conn, remote, proto)
        except OSError as err:
            _log_non_crit(err, "handling tcp: closing conn")
        finally:
            with self._conns_lock:
                self._conns.discard(conn)
            self.proxy.request_sema.release()

    def _serve_tcp(self, conn: socket.socket, remote: tuple, proto: Proto) -> None:
        log.debug("handling tcp: started handling %s request from %s", proto.value, remote)
        while self._started:
            try:
                conn.settimeout(DEFAULT_TIMEOUT)
                packet = read_prefixed(conn)
            except (EOFError, OSError) as err:
                _log_non_crit(err, "handling tcp: reading msg")
                return

            try:
                req = dns.message.from_wire(packet)
            except Exception as err:  # noqa: BLE001 - malformed wire data
                log.error("handling tcp: unpacking msg: %s", err)
                return

            ctx = self.proxy.new_context(proto, req)
            ctx.addr = remote
            ctx.conn = conn
            ctx.responder = self._respond_tcp
            try:
                self.proxy.handle_dns_request(ctx)
            except Exception as err:  # noqa: BLE001 - logged per request
                _log_non_crit(err, f"handling tcp: handling {proto.value} request")

    def _respond_tcp(self, ctx: DNSContext) -> None:
        conn = ctx.conn
        if ctx.res is None:
            conn.close()
            return

        wire = ctx.res.to_wire()
        try:
            write_prefixed(wire, conn)
        except OSError as err:
            if conn.fileno() == -1:
                return
            raise OSError(f"writing message: {err}") from err