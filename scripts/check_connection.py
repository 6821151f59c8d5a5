#!/usr/bin/env python3
"""
Check the qBittorrent connection for local development.

This script logs in once with the configured settings and lists a few
torrents, without starting the polling engine.
"""

import sys
from pathlib import Path

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from qbt_poller.config import get_settings, normalize_config, validate_config
from qbt_poller.exceptions import QBPollerError
from qbt_poller.session import SessionManager
from qbt_poller.state import EngineStateMachine
from qbt_poller.tls import TlsMaterialCache
from qbt_poller.transport import Transport


async def check_connection():
    """Log in and fetch the torrent list once."""
    print("🔍 Testing qBittorrent connection...")

    settings = get_settings()
    config = normalize_config(settings.module_config())

    print(f"📋 Configuration:")
    print(f"   Host: {config.connection.host}")
    print(f"   Username: {config.connection.username}")

    errors = validate_config(config, settings.base_dir)
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return False

    tls_cache = TlsMaterialCache(config.connection.tls, settings.base_dir)
    transport = Transport(tls_cache)
    session = SessionManager(config.connection, transport, EngineStateMachine())

    if not await session.ensure_authenticated():
        print("❌ Authentication failed")
        return False
    print("✅ Authentication successful!")

    try:
        response = await transport.request(
            f"{config.connection.host}/api/v2/torrents/info",
            headers=session.auth_headers(),
            timeout=config.polling.poll_timeout / 1000,
        )
    except QBPollerError as e:
        print(f"❌ Fetch failed: {e}")
        return False

    if not response.ok:
        print(f"❌ Fetch failed with status {response.status}")
        return False

    torrents = response.json()
    print(f"✅ Found {len(torrents)} torrents")
    for torrent in torrents[:5]:
        print(f"   - {torrent.get('name')} ({torrent.get('progress', 0):.0%})")

    print("\n🎉 qBittorrent connection test successful!")
    return True


if __name__ == "__main__":
    import asyncio

    print("🚀 qBittorrent Poller - Connection Test")
    print("=" * 50)

    success = asyncio.run(check_connection())
    sys.exit(0 if success else 1)
