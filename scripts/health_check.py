#!/usr/bin/env python3
"""Health check script to verify NADI4U API connectivity.

Run with: python scripts/health_check.py

Requires environment variables:
  NADI4U_EMAIL, NADI4U_PASSWORD
Optional:
  NADI4U_BASE_URL, NADI4U_API_KEY
"""

import asyncio
import os
import sys
import tempfile
from datetime import date
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from nadi4u import ClientSettings, Nadi4uClient


async def health_check() -> bool:
    """Test authentication and the main read endpoints."""
    email = os.environ.get("NADI4U_EMAIL")
    password = os.environ.get("NADI4U_PASSWORD")

    if not email or not password:
        print("❌ NADI4U_EMAIL and NADI4U_PASSWORD environment variables required")
        print("   Set them in .env file or export them")
        return False

    print("Testing NADI4U API connectivity...")
    print(f"  Email: {email}")

    # Throwaway storage so the check never touches a real saved session
    with tempfile.TemporaryDirectory() as storage_dir:
        settings = ClientSettings.from_env(storage_dir=Path(storage_dir))
        async with Nadi4uClient(settings) as client:
            # Test 1: Login
            print("\n1. Testing authentication...")
            try:
                await client.login(email, password, remember=False)
                print("   ✅ Login successful")
            except Exception as e:
                print(f"   ❌ Login failed: {type(e).__name__}: {e}")
                return False

            # Test 2: Announcements
            print("\n2. Testing announcements API...")
            try:
                announcements = await client.get_announcements()
                print(f"   ✅ Got {len(announcements)} announcements")
            except Exception as e:
                print(f"   ❌ Get announcements failed: {type(e).__name__}: {e}")
                return False

            # Test 3: Current month with schedules
            today = date.today()
            print(f"\n3. Testing month query for {today:%Y-%m}...")
            try:
                month = await client.get_smart_services_month_data(today.year, today.month - 1)
                print(f"   ✅ Got {len(month.events)} events, {len(month.schedule)} schedule rows")
            except Exception as e:
                print(f"   ❌ Month query failed: {type(e).__name__}: {e}")
                return False

    print("\n" + "=" * 50)
    print("✅ All health checks passed! API is working.")
    print("=" * 50)
    return True


def main() -> int:
    """Run health check and return exit code."""
    # Load .env if present
    env_file = Path(__file__).parent.parent / ".env"
    if env_file.exists():
        print(f"Loading credentials from {env_file}")
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ[key.strip()] = value

    success = asyncio.run(health_check())
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
