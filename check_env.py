#!/usr/bin/env python3
"""Check the backend configuration and write a template .env if none exists."""

import os
import sys
from pathlib import Path

ENV_TEMPLATE = """# Supabase (trips, vehicles, maintenance requests, geofence log, notifications)
TRIPNAV_SUPABASE_URL=https://your-project-id.supabase.co
TRIPNAV_SUPABASE_KEY=your-service-role-key-here

# API
TRIPNAV_API_PREFIX=/api
# Comma-separated or JSON array: ["http://localhost:5173"]
# TRIPNAV_FRONTEND_ALLOWED_ORIGINS=

# Routing (OSRM)
TRIPNAV_OSRM_BASE_URL=http://localhost:5000

# Navigation tuning
# TRIPNAV_DEVIATION_THRESHOLD_M=50
# TRIPNAV_RECALCULATION_INTERVAL_SECONDS=15
# TRIPNAV_PRE_TRIP_ISSUE_POLICY=report_only
"""

SECRET_KEYS = ("TRIPNAV_SUPABASE_KEY",)


def _mask(line: str) -> str:
    name, _, value = line.partition("=")
    value = value.strip()
    if name.strip() in SECRET_KEYS and len(value) > 20:
        return f"{name}={value[:12]}...{value[-6:]}"
    return line


def main() -> int:
    project_root = Path(__file__).parent
    env_file = project_root / ".env"

    if not env_file.exists():
        env_file.write_text(ENV_TEMPLATE, encoding="utf-8")
        print(f"Created template .env at {env_file}; fill in the Supabase credentials and rerun.")
        return 1

    print(f"Using {env_file}:")
    for line in env_file.read_text(encoding="utf-8").splitlines():
        print(f"  {_mask(line)}")
    print()

    sys.path.insert(0, str(project_root / "src"))
    from tripnav.config import Settings

    config = Settings()
    checks = {
        "Supabase URL": bool(config.supabase_url),
        "Supabase key": bool(config.supabase_key),
        "OSRM base URL": bool(config.osrm_base_url),
    }
    for label, ok in checks.items():
        print(f"{'OK     ' if ok else 'MISSING'} {label}")
    for name in ("TRIPNAV_SUPABASE_URL", "TRIPNAV_SUPABASE_KEY"):
        if os.getenv(name):
            print(f"note: {name} is also set in the process environment and overrides .env")

    print()
    print(f"Deviation threshold: {config.deviation_threshold_m} m")
    print(f"Recalculation interval: {config.recalculation_interval_seconds} s")
    print(f"Pre-trip issue policy: {config.pre_trip_issue_policy}")
    return 0 if checks["Supabase URL"] and checks["Supabase key"] else 1


if __name__ == "__main__":
    sys.exit(main())
