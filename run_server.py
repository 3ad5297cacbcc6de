#!/usr/bin/env python3
"""Drip Engine — progression & attribution API.

Launch: python3 run_server.py
Serves at http://0.0.0.0:8000 (or PORT env var)
"""

import logging
import os

import uvicorn

from drip_engine.config import HOST, PORT


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("  Drip Engine")
    print("=" * 60)

    supabase_url = os.environ.get("SUPABASE_URL", "")
    if not supabase_url:
        print("\n  WARNING: SUPABASE_URL not set. Set environment variables:")
        print("    SUPABASE_URL, SUPABASE_SERVICE_KEY")
        print("  Continuing anyway for local development...\n")

    # Seed the built-in sequence catalog
    if supabase_url:
        print("\n[1/2] Seeding built-in sequences...")
        try:
            from drip_engine.sync import sync_catalog
            stats = sync_catalog()
            print(f"  -> {stats['created']} created, {stats['existing']} already present")
            if stats["invalid"]:
                print(f"  -> {stats['invalid']} invalid definitions skipped")
        except Exception as e:
            print(f"  -> Seeding failed: {e}")
            print("  -> Continuing without catalog...")
    else:
        print("\n[1/2] Skipping catalog seed (no Supabase connection)")

    print(f"[2/2] Starting server on {HOST}:{PORT}")
    print(f"\n  API docs: http://{HOST}:{PORT}/api/v1/docs")
    print("  Press Ctrl+C to stop\n")

    from drip_engine.app import create_app
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
