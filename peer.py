import asyncio
import socket
import logging
import ssdp
from upnp import UPnP

HEARTBEAT_INTERVAL = 0.25

class UdpPeer(asyncio.DatagramProtocol):
    """
    Owns the UDP socket of a peer. Answers to our SSDP search arrive here
    like any other datagram and are routed to the UPnP context; everything
    else goes to `on_datagram`, if set.
    """
    def __init__(self, port=0, enable_upnp=True, on_datagram=None):
        self.port = port
        self.transport = None
        self.on_datagram = on_datagram
        self.upnp = UPnP(self) if enable_upnp else None
        self.tasks = set()
        self.heartbeat_task = None

    async def start(self, host='0.0.0.0'):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(host, self.port))
        self.port = self.transport.get_extra_info('sockname')[1]
        self.heartbeat_task = asyncio.create_task(self._heartbeat())
        logging.info(f"Peer: Listening on UDP {host}:{self.port}")

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if self.upnp and self.upnp.is_discovery_open() and ssdp.is_discovery_reply(data):
            try:
                location = ssdp.parse_location(data)
            except ValueError as e:
                logging.debug(f"Peer: Failed to parse UPnP response from {addr[0]}: {e}")
                return
            self._spawn(self.upnp.extract_service_url(addr, location))
            return

        if self.on_datagram:
            self.on_datagram(data, addr)

    def error_received(self, exc):
        logging.debug(f"Peer: Socket error: {exc}")

    def raw_send(self, data, addr):
        if not self.transport:
            raise OSError("Peer socket is not open")
        self.transport.sendto(data, addr)

    def set_broadcast(self, enabled):
        sock = self.transport.get_extra_info('socket') if self.transport else None
        if sock is None:
            return
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1 if enabled else 0)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def _heartbeat(self):
        while True:
            if self.upnp:
                await self.upnp.check_timeout()
            await asyncio.sleep(HEARTBEAT_INTERVAL)

    async def close(self):
        pending = list(self.tasks)
        if self.heartbeat_task:
            pending.append(self.heartbeat_task)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                # Re-raise if close() itself is being cancelled
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
        self.tasks.clear()
        self.heartbeat_task = None
        if self.transport:
            self.transport.close()
            self.transport = None
