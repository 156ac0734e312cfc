import logging
import aiohttp
import defusedxml.ElementTree as ET
from xml.sax.saxutils import escape

HTTP_TIMEOUT = 10

SERVICE_NS = "urn:schemas-upnp-org:service:{}:1"

ENVELOPE = (
    '<?xml version="1.0"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
    's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
    '<s:Body>{}</s:Body>'
    '</s:Envelope>'
)

def action_body(action, service_name, arguments=()):
    """
    Builds the <u:Action> element for a WAN connection service.
    arguments is a sequence of (name, value) pairs; the gateway expects them
    in the order the service description declares them.
    """
    args = "".join(f"<{name}>{escape(str(value))}</{name}>" for name, value in arguments)
    return f'<u:{action} xmlns:u="{SERVICE_NS.format(service_name)}">{args}</u:{action}>'

def find_text(root, name):
    """
    Text of the first element whose local name is `name`, in any namespace.
    Raises ValueError if there is no such element.
    """
    for elem in root.iter():
        if elem.tag.rsplit('}', 1)[-1] == name:
            return (elem.text or "").strip()
    raise ValueError(f"No {name} in SOAP response")

async def soap_request(url, body, action, service_name):
    """
    POSTs a SOAP 1.1 request and returns the parsed response root.
    Errors are not handled here: aiohttp.ClientError for transport and HTTP
    status failures, ParseError for a malformed reply.
    """
    envelope = ENVELOPE.format(body).encode('utf-8')
    headers = {
        'SOAPACTION': f'"{SERVICE_NS.format(service_name)}#{action}"',
        'Content-Type': 'text/xml; charset="utf-8"',
    }

    logging.debug(f"SOAP: {action} -> {url}")
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(url, data=envelope, headers=headers) as resp:
            resp.raise_for_status()
            content = await resp.read()

    return ET.fromstring(content)
