"""Supabase client for the trip backend."""

import logging
from functools import lru_cache
from supabase import create_client, Client
from ..config import settings


@lru_cache()
def get_supabase_client() -> Client | None:
    """Get cached Supabase client instance.

    Returns:
        Supabase Client instance if configured, None otherwise.
        Note: This does not test the connection - actual queries may fail with network errors.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logging.warning("Supabase credentials not configured (missing URL or key)")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logging.error(f"Failed to create Supabase client: {e}")
        return None


# Tables written by the trip engine:
#
#   trips                      trip_status, has_completed_pre_trip, has_completed_post_trip,
#                              start_time, end_time
#   vehicles                   status ("Available", "In Service", "Under Maintenance")
#   maintenanceservicerequest  one row per inspection that reported issues
#   geofence_events            entered/exited log per trip
#   notifications              fleet manager alerts (type "trip_alert")
