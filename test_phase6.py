import unittest
import asyncio
import ipaddress
from aiohttp import web
from aiohttp.test_utils import TestServer
from peer import UdpPeer
from upnp import UPnPStatus
from test_phase2 import make_description
from unittest.mock import MagicMock, patch

EXTERNAL_IP_RESPONSE = (
    '<?xml version="1.0"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
    '<u:GetExternalIPAddressResponse xmlns:u="urn:schemas-upnp-org:service:WANIPConnection:1">'
    '<NewExternalIPAddress>198.51.100.4</NewExternalIPAddress>'
    '</u:GetExternalIPAddressResponse></s:Body></s:Envelope>'
)

EMPTY_RESPONSE = (
    '<?xml version="1.0"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body/></s:Envelope>'
)

class FakeGateway(asyncio.DatagramProtocol):
    """
    Answers M-SEARCH like a home router would.
    """
    def __init__(self, location):
        self.location = location
        self.transport = None
        self.searches = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if not data.startswith(b"M-SEARCH"):
            return
        self.searches += 1
        reply = (
            "HTTP/1.1 200 OK\r\n"
            "CACHE-CONTROL: max-age=120\r\n"
            "ST: upnp:rootdevice\r\n"
            "SERVER: Linux UPnP/1.0 FakeRouter/1.0\r\n"
            f"LOCATION: {self.location}\r\n"
            "\r\n"
        )
        self.transport.sendto(reply.encode('utf-8'), addr)

class TestDiscoveryOverLoopback(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.soap_calls = []
        self.description = make_description(services=[("WANIPConnection", "/ctl/IPConn")])

        app = web.Application()
        app.router.add_get('/rootDesc.xml', self.handle_description)
        app.router.add_post('/ctl/IPConn', self.handle_control)
        self.http = TestServer(app, host='127.0.0.1')
        await self.http.start_server()

        loop = asyncio.get_running_loop()
        self.gateway = FakeGateway(str(self.http.make_url('/rootDesc.xml')))
        self.gateway_transport, _ = await loop.create_datagram_endpoint(
            lambda: self.gateway, local_addr=('127.0.0.1', 0)
        )
        gateway_port = self.gateway_transport.get_extra_info('sockname')[1]

        self.patches = [
            patch('ssdp.SSDP_PORT', gateway_port),
            patch('ssdp.get_broadcast_addresses', return_value=['127.0.0.1']),
            patch('upnp.DISCOVERY_WINDOW', 0.5),
            patch('upnp.MAPPING_DELAY', 0),
        ]
        for p in self.patches:
            p.start()

        self.on_datagram = MagicMock()
        self.peer = UdpPeer(on_datagram=self.on_datagram)
        await self.peer.start('127.0.0.1')

    async def asyncTearDown(self):
        await self.peer.close()
        for p in self.patches:
            p.stop()
        self.gateway_transport.close()
        await self.http.close()

    async def handle_description(self, request):
        return web.Response(text=self.description, content_type='text/xml')

    async def handle_control(self, request):
        action = request.headers['SOAPACTION'].strip('"').split('#')[1]
        self.soap_calls.append((action, (await request.read()).decode('utf-8')))
        if action == "GetExternalIPAddress":
            return web.Response(text=EXTERNAL_IP_RESPONSE, content_type='text/xml')
        return web.Response(text=EMPTY_RESPONSE, content_type='text/xml')

    async def wait_for_discovery(self):
        for _ in range(30):
            if self.peer.upnp.status != UPnPStatus.DISCOVERING:
                return
            await asyncio.sleep(0.1)
        self.fail("Discovery never finished")

    async def test_full_cycle(self):
        self.peer.upnp.discover()
        await self.wait_for_discovery()

        self.assertEqual(self.gateway.searches, 1)
        self.assertEqual(self.peer.upnp.status, UPnPStatus.AVAILABLE)

        self.assertTrue(await self.peer.upnp.forward_port(self.peer.port, "loopback test"))
        action, body = self.soap_calls[0]
        self.assertEqual(action, "AddPortMapping")
        self.assertIn("<NewInternalClient>127.0.0.1</NewInternalClient>", body)
        self.assertIn(f"<NewExternalPort>{self.peer.port}</NewExternalPort>", body)

        ip = await self.peer.upnp.get_external_ip()
        self.assertEqual(ip, ipaddress.ip_address('198.51.100.4'))

        self.assertTrue(await self.peer.upnp.delete_forwarding_rule(self.peer.port))
        self.assertEqual([c[0] for c in self.soap_calls],
                         ["AddPortMapping", "GetExternalIPAddress", "DeletePortMapping"])

    async def test_no_gateway_answers(self):
        self.gateway.location = str(self.http.make_url('/missing.xml'))
        self.peer.upnp.discover()
        await self.wait_for_discovery()

        self.assertEqual(self.peer.upnp.status, UPnPStatus.NOT_AVAILABLE)
        self.assertFalse(await self.peer.upnp.forward_port(self.peer.port, "loopback test"))
        self.assertEqual(self.soap_calls, [])

    async def test_application_traffic_is_passed_on(self):
        self.peer.upnp.discover()
        self.gateway_transport.sendto(b"hello peer", ('127.0.0.1', self.peer.port))
        await asyncio.sleep(0.2)
        self.on_datagram.assert_called_once()
        self.assertEqual(self.on_datagram.call_args.args[0], b"hello peer")

    async def test_replies_after_window_are_not_routed_to_upnp(self):
        reply = (
            "HTTP/1.1 200 OK\r\nST: upnp:rootdevice\r\n"
            f"LOCATION: {self.gateway.location}\r\n\r\n"
        ).encode('utf-8')
        # No discovery running: the datagram belongs to the application
        self.gateway_transport.sendto(reply, ('127.0.0.1', self.peer.port))
        await asyncio.sleep(0.2)

        self.on_datagram.assert_called_once_with(reply, ('127.0.0.1', self.gateway_transport.get_extra_info('sockname')[1]))
        async with self.peer.upnp.results as gateways:
            self.assertEqual(gateways, ())

class TestPeerWithoutUPnP(unittest.IsolatedAsyncioTestCase):
    async def test_disabled(self):
        peer = UdpPeer(enable_upnp=False)
        await peer.start('127.0.0.1')
        try:
            self.assertIsNone(peer.upnp)
            self.assertNotEqual(peer.port, 0)
        finally:
            await peer.close()

    async def test_close_cancels_pending_tasks(self):
        peer = UdpPeer()
        await peer.start('127.0.0.1')
        pending = asyncio.Event()
        peer._spawn(pending.wait())

        await peer.close()
        self.assertEqual(peer.tasks, set())
        self.assertIsNone(peer.transport)

    async def test_cancelling_close_is_not_swallowed(self):
        peer = UdpPeer()
        await peer.start('127.0.0.1')

        async def slow_to_stop():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                await asyncio.sleep(0.3)

        peer._spawn(slow_to_stop())
        await asyncio.sleep(0)

        closer = asyncio.create_task(peer.close())
        await asyncio.sleep(0.05)
        closer.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await closer

        if peer.transport:
            peer.transport.close()

if __name__ == '__main__':
    unittest.main()
