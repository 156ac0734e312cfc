import asyncio
import sys
import logging
from peer import UdpPeer
from upnp import UPnPStatus

async def run(port, description):
    peer = UdpPeer(port=port)
    await peer.start()

    print("Discovering UPnP gateway...")
    peer.upnp.discover()

    # The peer heartbeat finalizes discovery once the window has passed
    while peer.upnp.status == UPnPStatus.DISCOVERING:
        await asyncio.sleep(0.5)

    if peer.upnp.status != UPnPStatus.AVAILABLE:
        print("No UPnP gateway found.")
        await peer.close()
        return

    try:
        if await peer.upnp.forward_port(peer.port, description):
            print(f"Forwarded UDP port {peer.port}")
        else:
            print(f"Failed to forward UDP port {peer.port}")

        external_ip = await peer.upnp.get_external_ip()
        print(f"External IP: {external_ip if external_ip else 'unknown'}")

        print("Press Ctrl+C to remove the mapping and exit.")
        while True:
            await asyncio.sleep(1)
    finally:
        await peer.upnp.delete_forwarding_rule(peer.port)
        await peer.close()

def main():
    if len(sys.argv) < 2:
        print("Usage: python main.py <port> [description]")
        sys.exit(1)

    port = int(sys.argv[1])
    description = sys.argv[2] if len(sys.argv) > 2 else "UDP Peer"

    logging.basicConfig(
        filename='upnp.log',
        filemode='w',
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    # Suppress noisy logs from libraries
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    try:
        asyncio.run(run(port, description))
    except KeyboardInterrupt:
        print("\nExiting...")

if __name__ == '__main__':
    main()
