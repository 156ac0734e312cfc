import asyncio
import enum
import time
import logging
import ipaddress
import collections
import ssdp
import soap
from description import combine_urls, parse_description, fetch_description

DISCOVERY_WINDOW = 6.0   # seconds the gateways get to answer
AVAILABILITY_WAIT = 1.0  # longest a caller waits on a running discovery
MAPPING_DELAY = 0.05     # consumer routers choke on back-to-back requests

class UPnPStatus(enum.Enum):
    DISCOVERING = "Discovering"
    AVAILABLE = "Available"
    NOT_AVAILABLE = "NotAvailable"

DiscoveryResult = collections.namedtuple('DiscoveryResult', ['sender', 'service_url', 'service_name'])

class DiscoveryResults:
    """
    Gateways found during discovery, in the order they answered.

    A single lock covers both add() and iteration; iterate with
    `async with results as snapshot:` so no reply lands mid-iteration.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self._results = []

    async def add(self, result):
        async with self.lock:
            self._results.append(result)

    async def count(self):
        async with self.lock:
            return len(self._results)

    async def __aenter__(self):
        await self.lock.acquire()
        return tuple(self._results)

    async def __aexit__(self, exc_type, exc, tb):
        self.lock.release()

class UPnP:
    """
    UPnP discovery and port mapping for one peer.
    `peer` provides raw_send(data, addr) and set_broadcast(enabled).
    """
    def __init__(self, peer):
        self.peer = peer
        self.results = DiscoveryResults()
        self.discovery_deadline = None
        self._status = UPnPStatus.DISCOVERING
        self._discovery_complete = asyncio.Event()

    @property
    def status(self):
        return self._status

    # --- Discovery ---

    def discover(self):
        self.discovery_deadline = time.monotonic() + DISCOVERY_WINDOW
        self._status = UPnPStatus.DISCOVERING
        self._discovery_complete.clear()
        # Each round starts from an empty store; gateways must answer again
        self.results = DiscoveryResults()

        logging.info("UPnP: Sending SSDP discovery...")
        self.peer.set_broadcast(True)
        try:
            for addr in ssdp.get_broadcast_addresses():
                try:
                    self.peer.raw_send(ssdp.SSDP_REQUEST, (addr, ssdp.SSDP_PORT))
                except OSError as e:
                    logging.debug(f"UPnP: Discovery send to {addr} failed: {e}")
        finally:
            self.peer.set_broadcast(False)

    def is_discovery_open(self):
        return self.discovery_deadline is not None and time.monotonic() < self.discovery_deadline

    async def check_timeout(self):
        if self.discovery_deadline is None or time.monotonic() < self.discovery_deadline:
            return
        if self._status != UPnPStatus.DISCOVERING:
            return

        found = await self.results.count()
        # Re-check: another task may have finalized while we waited on the lock
        if self._status != UPnPStatus.DISCOVERING:
            return
        self._status = UPnPStatus.AVAILABLE if found else UPnPStatus.NOT_AVAILABLE
        self._discovery_complete.set()
        logging.info(f"UPnP: Discovery finished, {found} gateway(s) found, status {self._status.value}")

    async def is_available(self):
        if self._status == UPnPStatus.AVAILABLE:
            return True
        if self._status == UPnPStatus.NOT_AVAILABLE:
            return False
        if self.discovery_deadline is None:
            return False

        try:
            await asyncio.wait_for(self._discovery_complete.wait(), timeout=AVAILABILITY_WAIT)
            return self._status == UPnPStatus.AVAILABLE
        except asyncio.TimeoutError:
            pass

        if self._status == UPnPStatus.DISCOVERING and time.monotonic() > self.discovery_deadline:
            self._status = UPnPStatus.NOT_AVAILABLE
            self._discovery_complete.set()
        return False

    async def extract_service_url(self, sender, description_url):
        """
        Registers the responder at `sender` if the description at
        description_url is an internet gateway with a WAN connection service.
        """
        try:
            xml_content = await fetch_description(description_url)
            found = parse_description(xml_content)
        except Exception as e:
            logging.debug(f"UPnP: Exception ignored trying to parse description from {description_url}: {e}")
            return

        if not found:
            logging.debug(f"UPnP: {description_url} is not a usable internet gateway")
            return

        service_name, control_url = found
        result = DiscoveryResult(sender, combine_urls(description_url, control_url), service_name)
        await self.results.add(result)
        logging.info(f"UPnP: Gateway {sender[0]} offers {service_name} at {result.service_url}")

    # --- Port mapping ---

    async def forward_port(self, port, description):
        """
        Adds a permanent UDP mapping of `port` on every discovered gateway.
        Stops at the first gateway that fails.
        """
        if not await self.is_available():
            return False

        async with self.results as gateways:
            for result in gateways:
                client = ssdp.get_my_address(result.sender[0])
                if client is None:
                    continue

                body = soap.action_body("AddPortMapping", result.service_name, [
                    ("NewRemoteHost", ""),
                    ("NewExternalPort", port),
                    ("NewProtocol", "UDP"),
                    ("NewInternalPort", port),
                    ("NewInternalClient", client),
                    ("NewEnabled", 1),
                    ("NewPortMappingDescription", description),
                    ("NewLeaseDuration", 0),
                ])
                try:
                    await soap.soap_request(result.service_url, body, "AddPortMapping", result.service_name)
                    logging.debug(f"UPnP: Sent port forward request for {port} to {result.sender[0]}")
                    await asyncio.sleep(MAPPING_DELAY)
                except Exception as e:
                    logging.warning(f"UPnP: Port forward failed: {e}")
                    return False
        return True

    async def delete_forwarding_rule(self, port):
        if not await self.is_available():
            return False

        async with self.results as gateways:
            for result in gateways:
                body = soap.action_body("DeletePortMapping", result.service_name, [
                    ("NewRemoteHost", ""),
                    ("NewExternalPort", port),
                    ("NewProtocol", "UDP"),
                ])
                try:
                    await soap.soap_request(result.service_url, body, "DeletePortMapping", result.service_name)
                except Exception as e:
                    logging.warning(f"UPnP: Delete forwarding rule failed: {e}")
                    return False
        return True

    async def get_external_ip(self):
        """
        Public address as reported by the first discovered gateway, or None.
        """
        if not await self.is_available():
            return None

        async with self.results as gateways:
            for result in gateways:
                body = soap.action_body("GetExternalIPAddress", result.service_name)
                try:
                    root = await soap.soap_request(result.service_url, body, "GetExternalIPAddress", result.service_name)
                    return ipaddress.ip_address(soap.find_text(root, "NewExternalIPAddress"))
                except Exception as e:
                    logging.warning(f"UPnP: Failed to get external IP: {e}")
                    return None
        return None
