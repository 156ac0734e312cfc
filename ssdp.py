import re
import socket
import logging
import ipaddress
import psutil

# Constants for SSDP
SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
SSDP_MX = 3
SSDP_ST = "upnp:rootdevice"

SSDP_REQUEST = (
    "M-SEARCH * HTTP/1.1\r\n"
    f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
    f"ST:{SSDP_ST}\r\n"
    'MAN:"ssdp:discover"\r\n'
    f"MX:{SSDP_MX}\r\n"
    "\r\n"
).encode('utf-8')

# Anything shorter cannot carry a status line plus a LOCATION header
MIN_REPLY_SIZE = 32

LOCATION_RE = re.compile(r'LOCATION:\s*([^\r\n]+)', re.IGNORECASE)

def is_discovery_reply(data):
    """
    Cheap check whether a datagram looks like an answer to our M-SEARCH.
    """
    if len(data) <= MIN_REPLY_SIZE:
        return False
    text = data.decode('utf-8', errors='ignore')
    return "upnp:rootdevice" in text or "UPnP/1.0" in text

def parse_location(data):
    """
    Returns the description URL from the LOCATION header of an SSDP reply.
    """
    text = data.decode('utf-8', errors='ignore')
    match = LOCATION_RE.search(text)
    if not match:
        raise ValueError("No LOCATION in SSDP response")
    return match.group(1).strip()

def get_broadcast_addresses():
    """
    Broadcast address of every IPv4 interface that has one.
    The SSDP multicast group is always included first.
    """
    addresses = [SSDP_ADDR]
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logging.debug(f"SSDP: Could not enumerate interfaces: {e}")
        return addresses

    for name, addr_list in interfaces.items():
        for addr in addr_list:
            if addr.family != socket.AF_INET or not addr.broadcast:
                continue
            if addr.broadcast not in addresses:
                addresses.append(addr.broadcast)
    return addresses

def get_my_address(remote_ip):
    """
    Determines the local IP address used to reach remote_ip, or None when
    there is no route to it.
    """
    # Connecting a UDP socket sends nothing, it only selects the interface.
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect((str(remote_ip), SSDP_PORT))
        ip = ipaddress.ip_address(s.getsockname()[0])
    except (OSError, ValueError):
        return None
    finally:
        s.close()
    if ip.is_unspecified:
        return None
    return ip
