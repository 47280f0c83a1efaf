#!/usr/bin/env python3
"""Test connectivity to a running signaling relay.

This tool validates:
- Relay WebSocket (join a throwaway room, expect a ``peers`` reply)
- Relay HTTP health endpoint

Exit codes:
- 0: Relay reachable and healthy
- 1: One or more checks failed

Usage:
    python scripts/test-connection.py
    # Or with custom URLs:
    RELAY_WS=ws://localhost:3000 \\
    RELAY_HEALTH=http://localhost:3001/health \\
    python scripts/test-connection.py
"""

import asyncio
import json
import os
import sys
import uuid

try:
    import aiohttp
except ImportError as e:
    print("ERROR: Required dependencies not installed")
    print(f"Missing: {e.name}")
    print("Resolution: pip install -e .")
    sys.exit(1)


async def test_relay_ws(url: str) -> bool:
    """Join a probe room and wait for the membership reply.

    Args:
        url: Relay WebSocket URL

    Returns:
        True if the relay answered ``join`` with ``peers``, False otherwise
    """
    print(f"Testing Relay WebSocket ({url})... ", end="", flush=True)
    probe_id = f"probe-{uuid.uuid4().hex[:6]}"
    room = f"connection-test-{uuid.uuid4().hex[:6]}"
    try:
        timeout = aiohttp.ClientTimeout(total=5.0)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.ws_connect(url) as ws:
                await ws.send_str(json.dumps({"type": "join", "room": room, "id": probe_id}))
                reply = await ws.receive_json(timeout=5.0)
                await ws.send_str(json.dumps({"type": "leave", "id": probe_id, "room": room}))
                await ws.close()

        if reply.get("type") != "peers":
            print("FAILED")
            print(f"   Cause: unexpected reply {reply}")
            print("   Resolution: Check that the URL points at the signaling relay")
            return False

        print(f"OK (room members: {len(reply.get('peers', []))})")
        return True

    except aiohttp.ClientConnectorError:
        print("FAILED")
        print("   Cause: Connection refused - relay not running")
        print("   Resolution: mesh-relay (or python -m relay)")
        return False
    except asyncio.TimeoutError:
        print("FAILED")
        print("   Cause: Connection timeout")
        print("   Resolution: Check relay logs and network")
        return False
    except Exception as e:
        print("FAILED")
        print(f"   Cause: {type(e).__name__}: {e}")
        print("   Resolution: Check relay is running on correct port")
        return False


async def test_relay_health(url: str) -> bool:
    """Test HTTP health endpoint.

    Args:
        url: Health check URL

    Returns:
        True if healthy, False otherwise
    """
    print(f"Testing Relay Health ({url})... ", end="", flush=True)
    try:
        timeout = aiohttp.ClientTimeout(total=5.0)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                data = await resp.json()

                if resp.status == 200:
                    print(
                        f"OK (rooms={data.get('rooms', 0)}, "
                        f"connections={data.get('connections', 0)}, "
                        f"uptime={data.get('uptime_seconds', 0):.1f}s)"
                    )
                    return True
                else:
                    print(f"UNHEALTHY (HTTP {resp.status})")
                    print(f"   Health data: {data}")
                    print("   Resolution: Check relay logs for errors")
                    return False

    except aiohttp.ClientConnectorError:
        print("FAILED")
        print("   Cause: Connection refused - health endpoint not available")
        print("   Resolution: Ensure the relay runs with health.enabled: true")
        print("   Note: Health endpoint defaults to port 3001")
        return False
    except asyncio.TimeoutError:
        print("FAILED")
        print("   Cause: Health check timeout")
        return False
    except Exception as e:
        print("FAILED")
        print(f"   Cause: {type(e).__name__}: {e}")
        return False


async def main() -> int:
    """Run all connection tests.

    Returns:
        Exit code (0 = success, 1 = failure)
    """
    print("=" * 60)
    print("Relay Connection Test")
    print("=" * 60)
    print()

    relay_ws = os.getenv("RELAY_WS", "ws://localhost:3000")
    relay_health = os.getenv("RELAY_HEALTH", "http://localhost:3001/health")

    results = await asyncio.gather(
        test_relay_ws(relay_ws),
        test_relay_health(relay_health),
    )

    print()
    print("=" * 60)

    if all(results):
        print("Status: RELAY REACHABLE")
        print()
        print("Next steps:")
        print("  - Join a call: mesh-peer --room demo")
        return 0

    failed_count = sum(1 for r in results if not r)
    print(f"Status: {failed_count} CHECK(S) FAILED")
    return 1


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)
