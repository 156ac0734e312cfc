import aiohttp
import defusedxml.ElementTree as ET
from soap import HTTP_TIMEOUT, SERVICE_NS

DEVICE_NS = {'d': 'urn:schemas-upnp-org:device-1-0'}

GATEWAY_DEVICE = "InternetGatewayDevice"

# Tried in order
WAN_SERVICES = ["WANIPConnection", "WANPPPConnection"]

def combine_urls(gateway_url, sub_url):
    """
    Resolves a control URL against the description URL it came from.
    Gateways usually hand out host-relative paths like "/ctl/IPConn".
    """
    if "http:" in sub_url or "." in sub_url:
        return sub_url

    gateway_url = gateway_url.replace("http://", "")
    n = gateway_url.find("/")
    if n != -1:
        gateway_url = gateway_url[:n]
    return "http://" + gateway_url + sub_url

def parse_description(xml_content):
    """
    Finds the WAN connection service of an internet gateway description.
    Returns (service_name, control_url) or None if the document does not
    describe a gateway with a usable service.
    """
    root = ET.fromstring(xml_content)

    device_type = root.findtext('.//d:device/d:deviceType', namespaces=DEVICE_NS)
    if not device_type or GATEWAY_DEVICE not in device_type:
        return None

    for service_name in WAN_SERVICES:
        service_type = SERVICE_NS.format(service_name)
        for service in root.iterfind('.//d:service', DEVICE_NS):
            if (service.findtext('d:serviceType', namespaces=DEVICE_NS) or "").strip() != service_type:
                continue
            control_url = service.findtext('d:controlURL', namespaces=DEVICE_NS)
            if control_url:
                return service_name, control_url.strip()
    return None

async def fetch_description(url):
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise ValueError(f"Failed to fetch device description: {resp.status}")
            return await resp.read()
